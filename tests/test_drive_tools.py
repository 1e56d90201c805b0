"""
Tests for the Google Drive tools and helpers.
"""
import base64
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from gdrive.drive_helpers import (
    build_search_query,
    escape_query,
    file_uri,
    format_file_listing,
    format_search_results,
    get_export_mime_type,
    is_text_mime_type,
)


class TestHelpers:
    def test_escape_query(self):
        assert escape_query("it's") == "it\\'s"
        assert escape_query("a\\b") == "a\\\\b"
        assert build_search_query("bob's notes") == "fullText contains 'bob\\'s notes'"

    @pytest.mark.parametrize("mime_type,expected", [
        ("application/vnd.google-apps.document", "text/markdown"),
        ("application/vnd.google-apps.spreadsheet", "text/csv"),
        ("application/vnd.google-apps.presentation", "text/plain"),
        ("application/vnd.google-apps.drawing", "image/png"),
        ("application/vnd.google-apps.form", "text/plain"),
        ("application/pdf", None),
        (None, None),
    ])
    def test_export_mime_type(self, mime_type, expected):
        assert get_export_mime_type(mime_type) == expected

    def test_text_mime_types(self):
        assert is_text_mime_type("text/plain")
        assert is_text_mime_type("application/json")
        assert not is_text_mime_type("application/pdf")

    def test_resource_uris(self):
        assert file_uri("abc") == "gdrive:///abc"

    def test_search_result_format(self):
        files = [
            {"id": "1", "name": "Report", "mimeType": "application/pdf"},
            {"id": "2", "name": "Notes", "mimeType": "text/plain"},
        ]
        assert format_search_results(files) == "Found 2 files:\nReport (application/pdf)\nNotes (text/plain)"

    def test_listing_includes_cursor(self):
        text = format_file_listing([{"id": "1", "name": "Report", "mimeType": "application/pdf"}], "next-page")
        assert "gdrive:///1" in text
        assert "Next cursor: next-page" in text
        assert format_file_listing([], None) == "No files found."


class FakeDownloader:
    """MediaIoBaseDownload stand-in that writes the request's payload in one chunk."""

    def __init__(self, fh, request):
        self._fh = fh
        self._payload = request.payload

    def next_chunk(self):
        self._fh.write(self._payload)
        return None, True


def _drive_service(mime_type, payload, name="File"):
    service = MagicMock()
    files = service.files.return_value
    files.get.return_value.execute.return_value = {"id": "file-1", "name": name, "mimeType": mime_type}
    files.export_media.return_value.payload = payload
    files.get_media.return_value.payload = payload
    return service


@pytest.fixture
def fake_downloader():
    with patch("gdrive.drive_tools.MediaIoBaseDownload", FakeDownloader):
        yield


class TestFetchFileContent:
    @pytest.mark.asyncio
    async def test_google_doc_is_exported_as_markdown(self, fake_downloader):
        from gdrive.drive_tools import fetch_file_content

        service = _drive_service("application/vnd.google-apps.document", b"# Title")
        content = await fetch_file_content(service, "file-1")

        service.files.return_value.export_media.assert_called_once_with(fileId="file-1", mimeType="text/markdown")
        assert content.mime_type == "text/markdown"
        assert content.is_text
        assert content.text == "# Title"

    @pytest.mark.asyncio
    async def test_regular_text_file_is_downloaded(self, fake_downloader):
        from gdrive.drive_tools import fetch_file_content

        service = _drive_service("application/json", b'{"a": 1}')
        content = await fetch_file_content(service, "file-1")

        service.files.return_value.get_media.assert_called_once_with(fileId="file-1")
        assert content.is_text
        assert content.text == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_binary_file_is_base64(self, fake_downloader):
        from gdrive.drive_tools import fetch_file_content

        payload = b"\x89PNG\r\n\x1a\n"
        service = _drive_service("image/png", payload)
        content = await fetch_file_content(service, "file-1")

        assert not content.is_text
        assert base64.b64decode(content.blob) == payload


class TestListingAndSearch:
    @pytest.mark.asyncio
    async def test_search_files(self):
        from gdrive.drive_tools import search_files

        service = MagicMock()
        service.files.return_value.list.return_value.execute.return_value = {
            "files": [{"id": "1", "name": "Budget", "mimeType": "application/vnd.google-apps.spreadsheet"}]
        }

        text = await search_files(service, "budget's")

        kwargs = service.files.return_value.list.call_args.kwargs
        assert kwargs["q"] == "fullText contains 'budget\\'s'"
        assert kwargs["pageSize"] == 10
        assert text == "Found 1 files:\nBudget (application/vnd.google-apps.spreadsheet)"

    @pytest.mark.asyncio
    async def test_list_files_passes_cursor(self):
        from gdrive.drive_tools import list_files

        service = MagicMock()
        service.files.return_value.list.return_value.execute.return_value = {
            "files": [{"id": "1", "name": "Budget", "mimeType": "text/csv"}],
            "nextPageToken": "token-2",
        }

        text = await list_files(service, cursor="token-1", page_size=500)

        kwargs = service.files.return_value.list.call_args.kwargs
        assert kwargs["pageToken"] == "token-1"
        assert kwargs["pageSize"] == 100
        assert "Next cursor: token-2" in text


class TestRequestCredentials:
    def test_stdio_credentials(self):
        from core.context import DriveAuthenticationError, get_request_credentials, set_stdio_credentials

        set_stdio_credentials(None)
        with pytest.raises(DriveAuthenticationError):
            get_request_credentials()

        sentinel = object()
        set_stdio_credentials(sentinel, "default")
        try:
            assert get_request_credentials() is sentinel
        finally:
            set_stdio_credentials(None)

    def test_drive_service_uses_request_credentials(self):
        from gdrive import drive_tools

        with patch.object(drive_tools, "get_request_credentials", return_value="creds"), \
                patch.object(drive_tools, "build") as build:
            drive_tools.get_drive_service()
        build.assert_called_once_with("drive", "v3", credentials="creds", cache_discovery=False)


def _http_error(status, message):
    import httplib2
    from googleapiclient.errors import HttpError

    content = ('{"error": {"code": %d, "message": "%s"}}' % (status, message)).encode()
    return HttpError(httplib2.Response({"status": str(status)}), content)


class TestHttpErrorHandling:
    @pytest.mark.asyncio
    async def test_not_found_is_readable(self):
        from core.utils import handle_http_errors

        @handle_http_errors("read_drive_file", is_read_only=True)
        async def failing():
            raise _http_error(404, "File not found: abc")

        with pytest.raises(Exception) as exc_info:
            await failing()
        assert "file not found or not accessible" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_disabled_api_links_to_console(self):
        from core.utils import DRIVE_API_ENABLEMENT_LINK, handle_http_errors

        @handle_http_errors("search", is_read_only=True)
        async def failing():
            raise _http_error(403, "accessNotConfigured: Drive API has not been used in project 1234")

        with pytest.raises(Exception) as exc_info:
            await failing()
        assert DRIVE_API_ENABLEMENT_LINK in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_ssl_errors_are_retried(self):
        import ssl

        from core.utils import handle_http_errors

        calls = []

        @handle_http_errors("search", is_read_only=True)
        async def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ssl.SSLError("handshake")
            return "ok"

        with patch("core.utils.asyncio.sleep", new=AsyncMock()):
            assert await flaky() == "ok"
        assert len(calls) == 2
