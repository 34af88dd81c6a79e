"""
音频格式工具: 处理 QQ/微信 SILK v3 语音。

QQ 语音消息只接受腾讯私有的 SILK v3 编码，标准 ffmpeg 既不能解码也不能编码。

出站（发送语音）:
  任意音频 → ffmpeg → raw PCM (s16le, 24kHz, mono) → pilk.encode → .silk
入站（ASR 预处理）:
  SILK (.amr/.silk/.slk) → pilk.decode → raw PCM → wave 模块 → .wav
  仅在 asr_enabled 打开时由 prepare_inbound_voice 执行

临时文件都放在独立的临时目录中，任何退出路径（成功/失败/取消）都会删除。
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import wave
from pathlib import Path

from ...core.errors import TranscodeError

logger = logging.getLogger(__name__)

# SILK v3 文件魔数，可能以 '\x02' 前缀开头（QQ），也可能直接以 '#!SILK' 开头
_SILK_MAGIC = b"#!SILK"
_SILK_MAGIC_QQ = b"\x02#!SILK"

# QQ 语音采样率
SILK_SAMPLE_RATE = 24000
# ffmpeg 单次转码超时（秒）
TRANSCODE_TIMEOUT = 30


def is_silk_data(data: bytes) -> bool:
    return data.startswith(_SILK_MAGIC) or data.startswith(_SILK_MAGIC_QQ)


def is_silk_file(file_path: str | Path) -> bool:
    """检测文件是否为 SILK v3 格式（读取前 10 字节检查魔数）"""
    try:
        with open(file_path, "rb") as f:
            return is_silk_data(f.read(10))
    except OSError:
        return False


def _import_pilk():
    try:
        import pilk  # type: ignore[import-untyped]
    except ImportError as e:
        raise TranscodeError("pilk not installed. Run: pip install pilk") from e
    return pilk


async def _run_ffmpeg(ffmpeg: str, src: Path, pcm: Path, timeout: float) -> None:
    proc = await asyncio.create_subprocess_exec(
        ffmpeg, "-y", "-i", str(src),
        "-f", "s16le", "-ar", str(SILK_SAMPLE_RATE), "-ac", "1", str(pcm),
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except TimeoutError as e:
        raise TranscodeError(f"ffmpeg timed out after {timeout}s") from e
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    if proc.returncode != 0:
        tail = stderr.decode("utf-8", errors="replace").strip()[-300:]
        raise TranscodeError(f"ffmpeg exited with {proc.returncode}: {tail}")


async def encode_to_silk(
    data: bytes,
    suffix: str = ".audio",
    *,
    ffmpeg_path: str = "",
    timeout: float = TRANSCODE_TIMEOUT,
) -> bytes:
    """
    把任意音频字节转成 QQ 可播放的 SILK

    已是 SILK 的数据原样返回。

    Raises:
        TranscodeError: ffmpeg / pilk 不可用、超时或转码失败
    """
    if is_silk_data(data):
        return data

    ffmpeg = ffmpeg_path or shutil.which("ffmpeg")
    if not ffmpeg:
        raise TranscodeError("ffmpeg not found in PATH")
    pilk = _import_pilk()

    tmp_dir = Path(tempfile.mkdtemp(prefix="openclaw-silk-"))
    try:
        src = tmp_dir / f"input{suffix or '.audio'}"
        pcm = tmp_dir / "audio.pcm"
        silk = tmp_dir / "audio.silk"
        src.write_bytes(data)

        await _run_ffmpeg(ffmpeg, src, pcm, timeout)

        try:
            duration_ms = await asyncio.to_thread(
                pilk.encode, str(pcm), str(silk), pcm_rate=SILK_SAMPLE_RATE, tencent=True
            )
        except Exception as e:
            raise TranscodeError(f"pilk encode failed: {e}") from e

        encoded = silk.read_bytes()
        logger.info(f"[Audio] Encoded SILK: {len(data)} → {len(encoded)} bytes ({duration_ms}ms)")
        return encoded
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)


class SilkTranscoder:
    """出站语音转码策略（MediaTransfer 在失败时回退为原始字节）"""

    codec = "silk"

    def __init__(self, ffmpeg_path: str = "", timeout: float = TRANSCODE_TIMEOUT):
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    async def __call__(self, data: bytes, suffix: str) -> bytes:
        return await encode_to_silk(
            data, suffix, ffmpeg_path=self.ffmpeg_path, timeout=self.timeout
        )


# ==================== 入站 ASR 预处理 ====================


def _decode_silk(src: Path, dest: Path) -> int:
    """pilk 解码到临时 PCM，再封装为 16-bit 单声道 WAV 写入 dest，返回时长（毫秒）"""
    pilk = _import_pilk()
    with tempfile.TemporaryDirectory(prefix="openclaw-asr-") as tmp:
        pcm = Path(tmp) / "voice.pcm"
        duration_ms = pilk.decode(str(src), str(pcm), SILK_SAMPLE_RATE)
        frames = pcm.read_bytes()

    with wave.open(str(dest), "wb") as wav_f:
        wav_f.setnchannels(1)
        wav_f.setsampwidth(2)
        wav_f.setframerate(SILK_SAMPLE_RATE)
        wav_f.writeframes(frames)
    return duration_ms


def ensure_asr_compatible(audio_path: str) -> str:
    """
    SILK 语音解码为同目录的 .wav 供 ASR 使用，返回可识别文件的路径。

    非 SILK 原样返回；已有非空 .wav 直接复用；解码失败返回原路径。
    """
    if not is_silk_file(audio_path):
        return audio_path

    src = Path(audio_path)
    dest = src.with_suffix(".wav")
    if dest.is_file() and dest.stat().st_size > 0:
        return str(dest)

    try:
        duration_ms = _decode_silk(src, dest)
    except Exception as e:
        dest.unlink(missing_ok=True)
        logger.warning(f"[Audio] SILK decode failed for {src.name}, keeping original: {e}")
        return audio_path

    logger.info(f"[Audio] {src.name} decoded to {dest.name} ({duration_ms}ms)")
    return str(dest)


def prepare_inbound_voice(audio_path: str, settings=None) -> str:
    """入站语音交给 ASR 前的预处理，asr_enabled 关闭时不做任何转换"""
    if settings is None:
        from ...config import settings
    if not settings.asr_enabled:
        return audio_path
    return ensure_asr_compatible(audio_path)
