"""
openclaw-china - 国内 IM 通道公共能力

为钉钉、飞书、企业微信、企业微信应用、QQ 机器人适配器提供:
- access_token 缓存与单飞刷新
- 回调签名校验与消息加解密
- 媒体上传发送（含转码与文本降级）
- 出站文本清洗与投递策略
"""


def _resolve_version() -> str:
    """
    解析版本号。
    优先级：
      1. pyproject.toml（editable 安装时始终最新）
      2. importlib.metadata（正式 pip install 后可用）
    """
    from pathlib import Path

    pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
    if pyproject_path.exists():
        try:
            import tomllib
            with open(pyproject_path, "rb") as f:
                return tomllib.load(f)["project"]["version"]
        except (OSError, KeyError, ValueError):
            pass

    try:
        from importlib.metadata import PackageNotFoundError, version
        return version("openclaw-china")
    except PackageNotFoundError:
        pass

    return "0.0.0-dev"


__version__ = _resolve_version()

__author__ = "OpenClaw China"
