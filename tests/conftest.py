from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from ssmsdec import HIVE_FILENAME, DecryptionError, HiveRecord, ToolResult

ACCESS_DENIED = "ERROR: Access is denied."
KEY_NOT_FOUND = "ERROR: The system was unable to find the specified registry key or value."


class FakeHiveTool:
    """Stands in for reg.exe, hive contents are kept as {hive path: {value name: payload}}."""

    def __init__(self, hives=None, fail_load=(), fail_export=(), fail_unload=False, stale=False, corrupt=()):
        self.hives = hives if hives is not None else {}
        self.fail_load = set(fail_load)
        self.fail_export = set(fail_export)
        self.fail_unload = fail_unload
        self.corrupt = set(corrupt)
        self.mounted = "<stale>" if stale else None
        self.calls = []

    def query(self, key: str) -> ToolResult:
        self.calls.append(("query", key))
        return ToolResult(0 if self.mounted else 1)

    def load(self, key: str, hive_path: str) -> ToolResult:
        self.calls.append(("load", hive_path))
        assert self.mounted is None, f"{key} already holds {self.mounted}"
        if hive_path in self.fail_load:
            return ToolResult(1, stderr=ACCESS_DENIED)
        self.mounted = hive_path
        return ToolResult(0)

    def export(self, key: str, dump_path: str) -> ToolResult:
        self.calls.append(("export", key))
        assert self.mounted is not None
        if self.mounted in self.fail_export:
            return ToolResult(1, stderr=KEY_NOT_FOUND)
        if self.mounted in self.corrupt:
            with open(dump_path, "wb") as fh:
                fh.write(b"\xff\xfe\x41")
            return ToolResult(0)

        lines = ["Windows Registry Editor Version 5.00", "", f"[{key}]"]
        for name, payload in self.hives.get(self.mounted, {}).items():
            lines.append(f'"{name}"="{payload}"')
        lines.append("")
        with open(dump_path, "w", encoding="utf-16", newline="\r\n") as fh:
            fh.write("\n".join(lines) + "\n")
        return ToolResult(0)

    def unload(self, key: str) -> ToolResult:
        self.calls.append(("unload", key))
        if self.fail_unload:
            return ToolResult(1, stderr=ACCESS_DENIED)
        self.mounted = None
        return ToolResult(0)


class FakeDecryptor:
    """Known ciphertext/plaintext pairs instead of the user's DPAPI secrets."""

    def __init__(self):
        self.plaintexts = {}
        self.calls = []

    def protect(self, text: str) -> str:
        ciphertext = f"ciphertext-{len(self.plaintexts)}".encode()
        self.plaintexts[ciphertext] = text.encode("utf-16-le") + b"\x00\x00"
        return ciphertext.hex()

    def decrypt(self, data: bytes) -> bytes:
        self.calls.append(data)
        if data not in self.plaintexts:
            raise DecryptionError("Key not valid for use in specified state.")
        return self.plaintexts[data]


@pytest.fixture
def decryptor() -> FakeDecryptor:
    return FakeDecryptor()


@pytest.fixture
def config_root(tmp_path: Path) -> Path:
    root = tmp_path / "SQL Server Management Studio"
    root.mkdir()
    return root


@pytest.fixture
def make_hive(config_root: Path) -> Callable[[str], HiveRecord]:
    def _make_hive(identifier: str) -> HiveRecord:
        hive_dir = config_root / identifier
        hive_dir.mkdir()
        hive_path = hive_dir / HIVE_FILENAME
        hive_path.write_bytes(b"regf" + b"\x00" * 60)
        return HiveRecord(str(hive_path), identifier)

    return _make_hive


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    return tmp_path / "out"


@pytest.fixture
def hive_tool() -> type[FakeHiveTool]:
    return FakeHiveTool
