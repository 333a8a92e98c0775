from .artwork import crop_cover, format_hint_from_url
from .naming import build_output_filename, sanitize_component

__all__ = ["build_output_filename", "crop_cover", "format_hint_from_url", "sanitize_component"]
