"""
Document Storage Module

File storage collaborator for proof-of-payment uploads. The core stores the
returned reference and dereferences it later; it never inspects file contents.
"""

from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Dict, Optional, Tuple
import re
import threading
import uuid

from .exceptions import DocumentStorageError


_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]')


def build_proof_key(loan_id: str, filename: str) -> str:
    """Object key for a proof upload: proofs/<loan_id>/<random>_<sanitized name>"""
    name = _UNSAFE_CHARS.sub('_', PurePosixPath(filename or "proof").name) or "proof"
    return f"proofs/{loan_id}/{uuid.uuid4().hex}_{name}"


class DocumentStore(ABC):
    """Abstract binary document store"""

    @abstractmethod
    def put(self, key: str, content: bytes, content_type: Optional[str] = None) -> str:
        """Persist content under key and return an opaque stable reference"""
        pass

    @abstractmethod
    def open(self, reference: str) -> bytes:
        """Return the content behind a reference"""
        pass

    @abstractmethod
    def exists(self, reference: str) -> bool:
        pass


class LocalDocumentStore(DocumentStore):
    """Stores documents on the local filesystem under a base directory"""

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _resolve_safe_path(self, key: str) -> Path:
        if "\\" in key:
            raise DocumentStorageError("Invalid document key", {"key": key})
        key_path = PurePosixPath(key)
        if key_path.is_absolute() or ".." in key_path.parts:
            raise DocumentStorageError("Invalid document key", {"key": key})
        base = self.base_path.resolve()
        resolved = (base / Path(key)).resolve()
        if resolved != base and base not in resolved.parents:
            raise DocumentStorageError("Invalid document key", {"key": key})
        return resolved

    def put(self, key: str, content: bytes, content_type: Optional[str] = None) -> str:
        path = self._resolve_safe_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as e:
            raise DocumentStorageError(f"Failed to store document: {e}", {"key": key})
        return key

    def open(self, reference: str) -> bytes:
        path = self._resolve_safe_path(reference)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise DocumentStorageError("Document not found", {"reference": reference})
        except OSError as e:
            raise DocumentStorageError(f"Failed to read document: {e}", {"reference": reference})

    def exists(self, reference: str) -> bool:
        try:
            path = self._resolve_safe_path(reference)
        except DocumentStorageError:
            return False
        return path.exists()


class InMemoryDocumentStore(DocumentStore):
    """Document store kept in a dict, for testing"""

    def __init__(self):
        self._documents: Dict[str, Tuple[bytes, Optional[str]]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, content: bytes, content_type: Optional[str] = None) -> str:
        with self._lock:
            self._documents[key] = (bytes(content), content_type)
        return key

    def open(self, reference: str) -> bytes:
        with self._lock:
            if reference not in self._documents:
                raise DocumentStorageError("Document not found", {"reference": reference})
            return self._documents[reference][0]

    def exists(self, reference: str) -> bool:
        with self._lock:
            return reference in self._documents

    def content_type(self, reference: str) -> Optional[str]:
        with self._lock:
            entry = self._documents.get(reference)
            return entry[1] if entry else None
