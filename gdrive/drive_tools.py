"""
Google Drive MCP Tools

This module provides the MCP tools and the gdrive:/// resource for reading Google
Drive. Every call runs with the Google credentials of the request being handled.
"""
import asyncio
import base64
import io
import logging
from dataclasses import dataclass
from typing import Optional, Union

from googleapiclient.discovery import build
from googleapiclient.http import MediaIoBaseDownload

from core.context import get_request_credentials, get_request_user_id
from core.server import server
from core.utils import handle_http_errors
from gdrive.drive_helpers import (
    DEFAULT_MIME_TYPE,
    build_search_query,
    file_uri,
    format_file_listing,
    format_search_results,
    get_export_mime_type,
    is_text_mime_type,
)

logger = logging.getLogger(__name__)

SEARCH_PAGE_SIZE = 10
MAX_LIST_PAGE_SIZE = 100


@dataclass
class DriveFileContent:
    file_id: str
    name: str
    mime_type: str
    data: bytes

    @property
    def is_text(self) -> bool:
        return is_text_mime_type(self.mime_type)

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")

    @property
    def blob(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


def get_drive_service():
    """Drive v3 client bound to the current request's credentials."""
    return build("drive", "v3", credentials=get_request_credentials(), cache_discovery=False)


async def _download(request_obj) -> bytes:
    fh = io.BytesIO()
    downloader = MediaIoBaseDownload(fh, request_obj)
    done = False
    while not done:
        _, done = await asyncio.to_thread(downloader.next_chunk)
    return fh.getvalue()


async def search_files(service, query: str) -> str:
    final_query = build_search_query(query)
    logger.info(f"[search] Query: '{final_query}'")
    results = await asyncio.to_thread(
        service.files().list(
            q=final_query,
            pageSize=SEARCH_PAGE_SIZE,
            fields="files(id, name, mimeType, modifiedTime, size)",
        ).execute
    )
    return format_search_results(results.get("files", []))


async def list_files(service, cursor: Optional[str] = None, page_size: int = SEARCH_PAGE_SIZE) -> str:
    params = {
        "pageSize": max(1, min(page_size, MAX_LIST_PAGE_SIZE)),
        "fields": "nextPageToken, files(id, name, mimeType)",
    }
    if cursor:
        params["pageToken"] = cursor

    results = await asyncio.to_thread(service.files().list(**params).execute)
    return format_file_listing(results.get("files", []), results.get("nextPageToken"))


async def fetch_file_content(service, file_id: str) -> DriveFileContent:
    """
    Download a file, exporting native Google Workspace files first.

    Docs become Markdown, Sheets CSV, Slides plain text and Drawings PNG; any
    other Google Workspace type is exported as plain text.
    """
    file_metadata = await asyncio.to_thread(
        service.files().get(fileId=file_id, fields="id, name, mimeType", supportsAllDrives=True).execute
    )
    mime_type = file_metadata.get("mimeType") or DEFAULT_MIME_TYPE
    name = file_metadata.get("name", "Unknown File")

    export_mime_type = get_export_mime_type(mime_type)
    if export_mime_type:
        logger.debug(f"Exporting {file_id} ({mime_type}) as {export_mime_type}")
        request_obj = service.files().export_media(fileId=file_id, mimeType=export_mime_type)
        mime_type = export_mime_type
    else:
        request_obj = service.files().get_media(fileId=file_id)

    data = await _download(request_obj)
    return DriveFileContent(file_id=file_id, name=name, mime_type=mime_type, data=data)


@server.tool()
@handle_http_errors("search", is_read_only=True)
async def search(query: str) -> str:
    """
    Search for files in Google Drive by full text.

    Args:
        query (str): Search query

    Returns:
        str: "Found N files:" followed by one "<name> (<mimeType>)" line per file.
    """
    logger.info(f"[search] Invoked for {get_request_user_id() or 'unknown user'}")
    return await search_files(get_drive_service(), query)


@server.tool()
@handle_http_errors("list_drive_files", is_read_only=True)
async def list_drive_files(cursor: Optional[str] = None, page_size: int = SEARCH_PAGE_SIZE) -> str:
    """
    List files in Google Drive, one page at a time.

    Args:
        cursor (Optional[str]): Cursor returned by a previous call, to fetch the next page.
        page_size (int): Files per page. Defaults to 10, at most 100.

    Returns:
        str: File names, IDs, MIME types and gdrive:/// URIs, plus the next cursor if there are more files.
    """
    logger.info(f"[list_drive_files] Invoked. Cursor: {cursor}")
    return await list_files(get_drive_service(), cursor, page_size)


@server.tool()
@handle_http_errors("read_drive_file", is_read_only=True)
async def read_drive_file(file_id: str) -> str:
    """
    Read the content of a Google Drive file.

    Args:
        file_id (str): Drive file ID.

    Returns:
        str: A metadata header followed by the text content, or the base64 content of binary files.
    """
    logger.info(f"[read_drive_file] Invoked. File ID: '{file_id}'")
    content = await fetch_file_content(get_drive_service(), file_id)

    header = f'File: "{content.name}" (ID: {file_id}, Type: {content.mime_type})\nURI: {file_uri(file_id)}\n\n'
    if content.is_text:
        return header + "--- CONTENT ---\n" + content.text
    return header + f"--- BASE64 CONTENT ({len(content.data)} bytes) ---\n" + content.blob


@server.resource("gdrive:///{file_id}", name="drive_file", description="A file in Google Drive")
@handle_http_errors("drive_file_resource", is_read_only=True)
async def drive_file_resource(file_id: str) -> Union[str, bytes]:
    content = await fetch_file_content(get_drive_service(), file_id)
    # bytes are returned to the client as a base64 blob
    return content.text if content.is_text else content.data
