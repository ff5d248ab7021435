# tests/conftest.py
import json
import os
import tempfile

import pytest

from logista import TemplateFormatter


@pytest.fixture
def temp_jsonlog():
    """Create a temporary file with newline-delimited JSON log records."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".log", delete=False) as f:
        records = [
            {
                "timestamp": "2024-03-16T14:30:00Z",
                "level": "info",
                "message": "Starting service",
                "logger": "api",
            },
            {
                "timestamp": "2024-03-16T14:30:01Z",
                "level": "error",
                "message": "Connection failed",
                "logger": "db",
            },
            {
                "timestamp": "2024-03-16T14:30:02Z",
                "level": "info",
                "message": "Reconnected",
                "logger": "db",
            },
        ]
        for record in records:
            f.write(json.dumps(record) + "\n")
    yield f.name
    os.unlink(f.name)


@pytest.fixture
def grpc_record():
    return {
        "timestamp": "2024-03-10T15:04:05Z",
        "level": "info",
        "message": "finished call",
        "grpc.method": "GetUser",
        "grpc.service": "users.v1.UserService",
        "grpc.code": "OK",
    }


@pytest.fixture
def plain():
    """Factory for formatters without colors."""

    def make(fmt="{level} {message}", **kwargs):
        return TemplateFormatter(fmt, no_colors=True, **kwargs)

    return make
