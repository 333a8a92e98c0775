import json
import logging
import os
import sys

from PIL import __version__ as pillow_version
from yt_dlp.version import __version__ as ytdlp_version


def get_runtime_info():
    return {
        "app_version": os.environ.get("AUDIOGRAB_VERSION", "0.0.0"),
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
        "pillow_version": pillow_version,
    }


def log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logging.log(level, json.dumps(payload, sort_keys=True, default=str))
    except Exception as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")
