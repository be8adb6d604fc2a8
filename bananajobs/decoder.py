# bananajobs/decoder.py

import base64
import binascii
import re
from typing import Any, Optional, Sequence, Tuple, Union

from .errors import NoResultFoundError, ResultDecodeError
from .model import Artifact, JobKind

FieldPath = Tuple[Union[str, int], ...]

# Field names seen across RunPod / KIE.ai responses, most specific first.
DEFAULT_RESULT_FIELDS: Tuple[FieldPath, ...] = (
    ("result",),
    ("video",),
    ("video_url",),
    ("output",),
    ("videos", 0),
    ("files", 0),
    ("resultUrls", 0),
)

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")
_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+\-]+/[\w.+\-]+)?(?:;[^,]*)?;base64,", re.IGNORECASE)

_DEFAULT_MIME = {
    JobKind.VIDEO: "video/mp4",
    JobKind.IMAGE: "image/png",
}


def _resolve(output: Any, path: FieldPath) -> Any:
    node = output
    for key in path:
        if isinstance(key, int):
            if not isinstance(node, list) or len(node) <= key:
                return None
            node = node[key]
        else:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        if node is None:
            return None
    return node


def locate_artifact(output: Any, fields: Sequence[FieldPath] = DEFAULT_RESULT_FIELDS) -> Optional[str]:
    """
    Return the first non-empty artifact reference in `output`, following
    the ordered field paths. A bare string output is the artifact itself;
    list entries that are objects contribute their "url" key.
    """
    if isinstance(output, str):
        return output.strip() or None

    for path in fields:
        value = _resolve(output, path)
        if isinstance(value, dict):
            value = value.get("url")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def has_url_scheme(raw: str) -> bool:
    return bool(_SCHEME_RE.match(raw))


def sniff_mime_type(data: bytes) -> Optional[str]:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[4:8] == b"ftyp":
        return "video/mp4"
    if data.startswith(b"\x1a\x45\xdf\xa3"):
        return "video/webm"
    return None


def _b64decode(payload: str) -> bytes:
    cleaned = "".join(payload.split())
    # Some providers drop the trailing padding
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ResultDecodeError(f"result is neither a URL nor valid base64: {e}") from e


def decode_artifact(raw: str, kind: JobKind) -> Artifact:
    """
    Normalise a located artifact reference.

    Strings with a URI scheme are returned untouched as URLs. Everything else
    is treated as base64 payload and decoded into a blob; the MIME type comes
    from a data: prefix, then from the payload's magic bytes, then from the
    job kind.
    """
    raw = raw.strip()
    if not raw:
        raise NoResultFoundError("empty result payload")

    if has_url_scheme(raw):
        return Artifact(kind="url", value=raw)

    mime_type = None
    m = _DATA_URI_RE.match(raw)
    if m:
        mime_type = m.group("mime")
        raw = raw[m.end():]

    data = _b64decode(raw)
    if not data:
        raise ResultDecodeError("result payload decoded to zero bytes")

    mime_type = mime_type or sniff_mime_type(data) or _DEFAULT_MIME[kind]
    return Artifact(kind="blob", value=data, mime_type=mime_type)


def extract_result(output: Any, fields: Sequence[FieldPath], kind: JobKind) -> Artifact:
    raw = locate_artifact(output, fields)
    if raw is None:
        raise NoResultFoundError("completed without result")
    return decode_artifact(raw, kind)
