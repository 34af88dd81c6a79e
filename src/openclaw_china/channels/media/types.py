"""
媒体类别识别

按扩展名（含 mimetypes 兜底）或文件头魔数把媒体归为 image / audio / video / file。
"""

import mimetypes
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from urllib.parse import unquote, urlparse


class MediaClass(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"


_EXTENSION_CLASSES: dict[str, MediaClass] = {
    **{ext: MediaClass.IMAGE for ext in (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp")},
    **{
        ext: MediaClass.AUDIO
        for ext in (".mp3", ".wav", ".ogg", ".oga", ".opus", ".amr", ".silk", ".slk", ".m4a", ".aac", ".flac")
    },
    **{ext: MediaClass.VIDEO for ext in (".mp4", ".mov", ".avi", ".mkv", ".webm", ".m4v", ".3gp")},
    **{
        ext: MediaClass.FILE
        for ext in (".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".txt", ".md", ".csv", ".zip", ".rar", ".7z", ".json")
    },
}

# (偏移, 魔数, 类别)
_SIGNATURES: list[tuple[int, bytes, MediaClass]] = [
    (0, b"\x89PNG\r\n\x1a\n", MediaClass.IMAGE),
    (0, b"\xff\xd8\xff", MediaClass.IMAGE),
    (0, b"GIF87a", MediaClass.IMAGE),
    (0, b"GIF89a", MediaClass.IMAGE),
    (0, b"#!SILK", MediaClass.AUDIO),
    (0, b"\x02#!SILK", MediaClass.AUDIO),
    (0, b"#!AMR", MediaClass.AUDIO),
    (0, b"ID3", MediaClass.AUDIO),
    (0, b"OggS", MediaClass.AUDIO),
    (0, b"fLaC", MediaClass.AUDIO),
    (4, b"ftyp", MediaClass.VIDEO),
    (0, b"\x1a\x45\xdf\xa3", MediaClass.VIDEO),
    (0, b"%PDF", MediaClass.FILE),
    (0, b"PK\x03\x04", MediaClass.FILE),
]

_TITLE_SUFFIX = re.compile(r"""^(\S+)\s+(["'(]).*[)"']\s*$""")


def is_http_url(ref: str) -> bool:
    return ref.lower().startswith(("http://", "https://"))


def strip_title_from_url(ref: str) -> str:
    """去掉 markdown 图片引用残留的标题: `url "title"` -> `url`，以及 `<url>`"""
    ref = ref.strip()
    match = _TITLE_SUFFIX.match(ref)
    if match:
        ref = match.group(1)
    if ref.startswith("<") and ref.endswith(">"):
        ref = ref[1:-1].strip()
    return ref


def reference_name(ref: str) -> str:
    """引用对应的文件名（URL 取路径最后一段）"""
    if is_http_url(ref) or ref.lower().startswith("file://"):
        path = unquote(urlparse(ref).path)
    else:
        path = ref.replace("\\", "/")
    return PurePosixPath(path).name or "media"


def classify_reference(ref: str) -> MediaClass | None:
    """按扩展名分类；无扩展名或无法识别时返回 None"""
    name = reference_name(ref)
    suffix = PurePosixPath(name).suffix.lower()
    if not suffix:
        return None
    if suffix in _EXTENSION_CLASSES:
        return _EXTENSION_CLASSES[suffix]

    mime, _ = mimetypes.guess_type(name)
    if not mime:
        return None
    major = mime.split("/", 1)[0]
    if major in ("image", "audio", "video"):
        return MediaClass(major)
    return MediaClass.FILE


def sniff_media_class(data: bytes) -> MediaClass | None:
    """按文件头魔数分类"""
    head = data[:16]
    if head[:4] == b"RIFF" and len(head) >= 12:
        if head[8:12] == b"WEBP":
            return MediaClass.IMAGE
        if head[8:12] == b"WAVE":
            return MediaClass.AUDIO
        if head[8:12] == b"AVI ":
            return MediaClass.VIDEO
    for offset, magic, media_class in _SIGNATURES:
        if head[offset : offset + len(magic)] == magic:
            return media_class
    return None


def detect_media_class(ref: str, data: bytes | None = None) -> MediaClass:
    """扩展名优先，其次文件头，都无法识别时为 file"""
    return classify_reference(ref) or (sniff_media_class(data) if data else None) or MediaClass.FILE


@dataclass
class MediaAsset:
    """单次投递尝试中读取到的媒体（上传后或放弃后丢弃）"""

    source_ref: str
    media_class: MediaClass
    data: bytes
    file_name: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)
