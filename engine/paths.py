import os
import re
from pathlib import Path
from uuid import uuid4


PROJECT_ROOT = Path(__file__).resolve().parent.parent

_JOB_ID_RE = re.compile(r"[^A-Za-z0-9_.-]")
_MAX_JOB_ID_LEN = 64


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def safe_job_id(raw):
    """Turn a request correlation id into a single safe path component."""
    cleaned = _JOB_ID_RE.sub("-", str(raw or "")).strip(".-")[:_MAX_JOB_ID_LEN]
    if not cleaned:
        return uuid4().hex
    return cleaned


def resolve_job_dir(base_dir, job_id):
    resolved = os.path.abspath(os.path.join(base_dir, job_id))
    if resolved == os.path.abspath(base_dir) or not _is_within_base(resolved, base_dir):
        # Job directories must be direct children of the work base.
        raise ValueError(f"Job directory must be within base directory: {base_dir}")
    return resolved
