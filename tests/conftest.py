"""Pytest configuration and fixtures."""

import os
import sys
import tempfile
from pathlib import Path

# Add backend/ for imports and point file locations at a scratch directory -
# do this before any backend module is imported, they read env at import time
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root / "backend"))

_scratch = Path(tempfile.mkdtemp(prefix="podclip-tests-"))
os.environ.setdefault("PUBLIC_DIR", str(_scratch / "public"))
os.environ.setdefault("UPLOAD_DIR", str(_scratch / "uploads"))

import pytest

from planner import ClipSpec
from video import TranscodeFailed


@pytest.fixture
def fake_executor():
    """
    Build an executor stand-in.

    delays: {clip index: seconds to sleep before finishing}
    failures: {clip index: TranscodeFailed message}
    The returned coroutine function records every ClipSpec it is asked to render
    on its `calls` attribute.
    """
    import asyncio

    def build(delays=None, failures=None):
        delays = delays or {}
        failures = failures or {}
        calls = []

        async def executor(job_id, spec: ClipSpec, source_path, image_paths, output_dir):
            calls.append(spec)
            await asyncio.sleep(delays.get(spec.index, 0))
            if spec.index in failures:
                raise TranscodeFailed(failures[spec.index])
            return Path(output_dir) / spec.output_name(job_id)

        executor.calls = calls
        return executor

    return build


@pytest.fixture
def fixed_prober():
    """Build a prober stand-in that reports the same duration for every file."""

    def build(duration):
        async def prober(path):
            return duration

        return prober

    return build
