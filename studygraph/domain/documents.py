from __future__ import annotations

import base64
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional

from studygraph.core.settings import settings
from studygraph.domain.exceptions import InputValidationError


MEDIA_TYPES_BY_EXTENSION: dict[str, str] = {
    "pdf": "application/pdf",
    "txt": "text/plain",
    "md": "text/markdown",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
# Only these are decoded locally; everything else is sent to the model as a file payload.
TEXT_EXTENSIONS = frozenset({"txt", "md"})


def _setting(name: str, override: Any, default: Any) -> Any:
    if override is not None:
        return override
    value = getattr(settings, name, None)
    return default if value is None else value


def file_extension(filename: str) -> str:
    return Path(str(filename or "")).suffix.lstrip(".").lower()


@dataclass(frozen=True)
class DocumentSource:
    """
    One generation input: either raw text or an uploaded file.

    Built through `from_text` / `from_file`, which reject bad input before
    any network call.
    """

    kind: Literal["text", "file"]
    text: str = ""
    filename: str = ""
    media_type: str = ""
    data: bytes = field(default=b"", repr=False)

    @classmethod
    def from_text(
        cls,
        text: str,
        *,
        filename: str = "",
        min_chars: Optional[int] = None,
        max_chars: Optional[int] = None,
    ) -> "DocumentSource":
        min_len = int(_setting("MIN_INPUT_CHARS", min_chars, 80))
        max_len = int(_setting("MAX_TEXT_CHARS", max_chars, 50000))

        trimmed = str(text or "").strip()
        if len(trimmed) < min_len:
            raise InputValidationError(
                f"Text too short ({len(trimmed)} characters). Send at least {min_len} characters."
            )
        return cls(
            kind="text",
            text=trimmed[:max_len],
            filename=filename,
            media_type="text/plain",
        )

    @classmethod
    def from_file(
        cls,
        filename: str,
        data: bytes,
        media_type: Optional[str] = None,
        *,
        max_file_size_mb: Optional[float] = None,
        min_chars: Optional[int] = None,
        max_chars: Optional[int] = None,
    ) -> "DocumentSource":
        ext = file_extension(filename)
        if ext not in MEDIA_TYPES_BY_EXTENSION:
            supported = ", ".join(sorted(MEDIA_TYPES_BY_EXTENSION))
            raise InputValidationError(
                f"Unsupported format (.{ext or '?'}). Use one of: {supported}."
            )

        ceiling_mb = float(_setting("MAX_FILE_SIZE_MB", max_file_size_mb, 20.0))
        size_mb = len(data or b"") / (1024 * 1024)
        if size_mb > ceiling_mb:
            raise InputValidationError(
                f"File too large ({size_mb:.1f}MB). Maximum: {ceiling_mb:g}MB."
            )
        if not data:
            raise InputValidationError("The uploaded file is empty.")

        if ext in TEXT_EXTENSIONS:
            decoded = data.decode("utf-8", errors="replace").lstrip("\ufeff")
            return cls.from_text(
                decoded, filename=filename, min_chars=min_chars, max_chars=max_chars
            )

        return cls(
            kind="file",
            filename=Path(filename).name,
            media_type=str(media_type or MEDIA_TYPES_BY_EXTENSION[ext]),
            data=bytes(data),
        )

    @property
    def is_file(self) -> bool:
        return self.kind == "file"

    @property
    def size_bytes(self) -> int:
        return len(self.data) if self.is_file else len(self.text.encode("utf-8"))

    @property
    def size_mb(self) -> float:
        return self.size_bytes / (1024 * 1024)

    @property
    def label(self) -> str:
        return self.filename or f"{len(self.text)} characters"

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"

    def file_part(self) -> dict[str, Any]:
        return {
            "type": "file",
            "file": {"filename": self.filename, "file_data": self.to_data_url()},
        }

    def user_content(
        self, instruction: str, *, text: Optional[str] = None, max_chars: Optional[int] = None
    ) -> str | list[dict[str, Any]]:
        """
        Builds the user turn: a multi-part message (file payload + instruction)
        for files, or the instruction followed by a fenced text excerpt.
        """
        if self.is_file:
            return [self.file_part(), {"type": "text", "text": instruction}]

        body = self.text if text is None else text
        if max_chars is not None:
            body = body[: max(0, int(max_chars))]
        return f"{instruction}\n\n---\n{body}\n---"

    def chapter_excerpt(self, index: int, total: int, *, overlap: Optional[int] = None) -> str:
        """
        Naive equal-length split of the text with overlap on both sides;
        chapter k of N gets roughly the k-th Nth of the document.
        """
        if self.is_file or total <= 1:
            return self.text
        margin = max(0, int(_setting("CHAPTER_TEXT_OVERLAP_CHARS", overlap, 500)))
        chunk_size = math.ceil(len(self.text) / total)
        start = max(0, index * chunk_size - margin)
        end = min(len(self.text), (index + 1) * chunk_size + margin)
        return self.text[start:end]

    def describe(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "filename": self.filename or None,
            "media_type": self.media_type,
            "size_bytes": self.size_bytes,
        }
