from .categorizer import categorize
from .clipboard import CaptureResult, admit_capture, clear_history, convert_to_snippet, search_history
from .files import FileStorage, add_file, detect_file_type, get_mime_type, sanitize_filename

__all__ = [
    "CaptureResult",
    "FileStorage",
    "add_file",
    "admit_capture",
    "categorize",
    "clear_history",
    "convert_to_snippet",
    "detect_file_type",
    "get_mime_type",
    "sanitize_filename",
    "search_history",
]
