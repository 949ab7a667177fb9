"""Runtime markdown docs (AGENTS.md, SOUL.md, ...) exposed to the browser for editing."""

import hashlib
import re
from pathlib import Path
from typing import Any, NamedTuple

from ..config import normalize_doc_id

_MD_SUFFIX = re.compile(r"\.md$", re.IGNORECASE)
_SEPARATORS = re.compile(r"[_-]+")
_WORD_START = re.compile(r"\b[a-z]")


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def doc_title(doc_id: str) -> str:
    """``USER_NOTES.md`` -> ``USER NOTES``; ``daily-log.md`` -> ``Daily Log``."""
    base = _SEPARATORS.sub(" ", _MD_SUFFIX.sub("", doc_id)).strip()
    if not base:
        return doc_id
    return _WORD_START.sub(lambda m: m.group(0).upper(), base)


class RuntimeDoc(NamedTuple):
    id: str
    title: str
    body_markdown: str
    base_hash: str

    def to_dict(self) -> dict[str, Any]:
        return self._asdict()


class RuntimeDocStore:
    """Reads and writes the allow-listed docs inside one directory."""

    def __init__(self, directory: str | Path, doc_ids: list[str], include_missing: bool = False):
        self.directory = Path(directory)
        self.doc_ids = list(doc_ids)
        self.include_missing = include_missing

    def is_allowed(self, doc_id: str) -> bool:
        return doc_id in self.doc_ids

    def path_for(self, doc_id: str) -> Path:
        safe_id = normalize_doc_id(doc_id)
        if not safe_id:
            raise ValueError(f"Invalid runtime doc id: {doc_id}")
        return self.directory / safe_id

    def read(self, doc_id: str) -> RuntimeDoc | None:
        path = self.path_for(doc_id)
        if not path.is_file():
            return None
        body = path.read_text(encoding="utf-8")
        return RuntimeDoc(doc_id, doc_title(doc_id), body, sha256_hex(body))

    def read_all(self) -> list[RuntimeDoc]:
        docs = []
        for doc_id in self.doc_ids:
            doc = self.read(doc_id)
            if doc is not None:
                docs.append(doc)
            elif self.include_missing:
                docs.append(RuntimeDoc(doc_id, doc_title(doc_id), "", sha256_hex("")))
        return docs

    def write(self, doc_id: str, body_markdown: str) -> RuntimeDoc:
        path = self.path_for(doc_id)
        path.write_text(body_markdown, encoding="utf-8")
        doc = self.read(doc_id)
        if doc is None:
            raise OSError(f"Failed to read runtime doc {doc_id} after save.")
        return doc

    def delete(self, doc_id: str) -> None:
        self.path_for(doc_id).unlink()
