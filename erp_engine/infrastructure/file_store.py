from __future__ import annotations

import re
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict

from erp_engine.errors import NotFound, ValidationError


_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def build_file_ref(tenant_id: str, module: str, file_name: str | None = None, file_id: str | None = None) -> str:
    """Object key laid out as ``tenant/module/yyyy/mm/dd/file_id-file_name``."""
    now = datetime.now(timezone.utc)
    safe_name = _UNSAFE_NAME.sub("_", str(file_name or "upload").strip()) or "upload"
    return f"{tenant_id}/{module}/{now.year}/{now.month:02d}/{now.day:02d}/{file_id or uuid.uuid4().hex}-{safe_name}"


class FileStore(ABC):
    @abstractmethod
    def put(self, content: bytes, *, tenant_id: str, module: str, file_name: str | None = None) -> str:
        raise NotImplementedError

    @abstractmethod
    def get(self, file_ref: str) -> bytes:
        raise NotImplementedError

    def exists(self, file_ref: str) -> bool:
        try:
            self.get(file_ref)
        except NotFound:
            return False
        return True


class InMemoryFileStore(FileStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: Dict[str, bytes] = {}

    def put(self, content: bytes, *, tenant_id: str, module: str, file_name: str | None = None) -> str:
        if not isinstance(content, (bytes, bytearray)) or not content:
            raise ValidationError(message_key="quotation_file_required", details="file content is empty")
        file_ref = build_file_ref(tenant_id, module, file_name)
        with self._lock:
            self._objects[file_ref] = bytes(content)
        return file_ref

    def get(self, file_ref: str) -> bytes:
        with self._lock:
            content = self._objects.get(file_ref)
        if content is None:
            raise NotFound(details=f"file {file_ref} not found")
        return content
