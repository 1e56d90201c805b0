"""
Google Drive Helper Functions

Query building, export format selection and result formatting shared by the
Drive tools and the gdrive:/// resource.
"""
from typing import List, Dict, Any, Optional

RESOURCE_URI_PREFIX = "gdrive:///"
GOOGLE_APPS_MIME_PREFIX = "application/vnd.google-apps"

# Export formats for native Google Workspace files
EXPORT_MIME_TYPES = {
    "application/vnd.google-apps.document": "text/markdown",
    "application/vnd.google-apps.spreadsheet": "text/csv",
    "application/vnd.google-apps.presentation": "text/plain",
    "application/vnd.google-apps.drawing": "image/png",
}
DEFAULT_EXPORT_MIME_TYPE = "text/plain"
DEFAULT_MIME_TYPE = "application/octet-stream"


def escape_query(query: str) -> str:
    """Escape backslashes and single quotes for use inside a Drive query string literal."""
    return query.replace("\\", "\\\\").replace("'", "\\'")


def build_search_query(query: str) -> str:
    return f"fullText contains '{escape_query(query)}'"


def get_export_mime_type(mime_type: Optional[str]) -> Optional[str]:
    """
    Export format for a Google Workspace file.

    Args:
        mime_type: MIME type reported by Drive

    Returns:
        str: The export MIME type, or None when the file is downloaded as-is
    """
    if not mime_type or not mime_type.startswith(GOOGLE_APPS_MIME_PREFIX):
        return None
    return EXPORT_MIME_TYPES.get(mime_type, DEFAULT_EXPORT_MIME_TYPE)


def is_text_mime_type(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type == "application/json"


def file_uri(file_id: str) -> str:
    return f"{RESOURCE_URI_PREFIX}{file_id}"


def format_search_results(files: List[Dict[str, Any]]) -> str:
    """
    Format search results as one "<name> (<mimeType>)" line per file.

    Args:
        files: File objects from files.list

    Returns:
        str: "Found N files:" followed by the file lines
    """
    lines = "\n".join(f"{item.get('name')} ({item.get('mimeType')})" for item in files)
    return f"Found {len(files)} files:\n{lines}"


def format_file_listing(files: List[Dict[str, Any]], next_cursor: Optional[str]) -> str:
    if not files:
        return "No files found."
    parts = [f"Listed {len(files)} files:"]
    for item in files:
        parts.append(
            f"- {item.get('name')} (ID: {item['id']}, Type: {item.get('mimeType')}) URI: {file_uri(item['id'])}"
        )
    if next_cursor:
        parts.append(f"Next cursor: {next_cursor}")
    return "\n".join(parts)
