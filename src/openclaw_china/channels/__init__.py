"""
IM 通道公共能力

- token_cache: access_token 缓存（单飞刷新）
- crypto: 回调签名与加解密
- outbound: 出站文本清洗 / 投递策略
- media: 媒体读取、转码、上传发送
- adapters: 各平台媒体通道
"""
