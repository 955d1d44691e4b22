import shlex
import sys

import pytest
import yaml

from feedloop.step import Step

PYTHON = shlex.quote(sys.executable)


@pytest.fixture
def python_step():
    """Build a Step that runs an inline Python snippet with the current interpreter."""

    def _make(name: str, code: str, **kwargs) -> Step:
        return Step(name=name, command=PYTHON, args=("-c", code), **kwargs)

    return _make


@pytest.fixture
def write_config(tmp_path):
    """Write a feedloop.yaml into tmp_path and return its path."""

    def _write(data, name: str = "feedloop.yaml"):
        path = tmp_path / name
        if isinstance(data, str):
            path.write_text(data)
        else:
            path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path

    return _write


@pytest.fixture
def python_step_config():
    """Raw YAML step entry that runs an inline Python snippet."""

    def _make(name: str, code: str, **kwargs) -> dict:
        return {"name": name, "command": PYTHON, "args": ["-c", code], **kwargs}

    return _make
