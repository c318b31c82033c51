import os
import socket
import sys

import pytest

# Ensure project root on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))


@pytest.fixture(autouse=True)
def block_egress(monkeypatch):
    """The pipeline works on a local database only; any network access is a bug."""
    _original_socket = socket.socket

    def _guarded_socket(family=socket.AF_INET, type=socket.SOCK_STREAM, proto=0, fileno=None):
        if family == socket.AF_UNIX:
            return _original_socket(family, type, proto, fileno)
        raise RuntimeError("egress blocked")

    def _blocked(*args, **kwargs):  # pragma: no cover - guard
        raise RuntimeError("egress blocked")

    monkeypatch.setattr(socket, "socket", _guarded_socket)
    monkeypatch.setattr(socket, "create_connection", _blocked)
