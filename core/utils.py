import asyncio
import functools
import json
import logging
import os
import re
import ssl
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from googleapiclient.errors import HttpError
from starlette.requests import Request

from auth.oauth_error_handling import OAuthValidationError

logger = logging.getLogger(__name__)

DRIVE_API_ENABLEMENT_LINK = "https://console.cloud.google.com/flows/enableapi?apiid=drive.googleapis.com"

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
JSON_CONTENT_TYPE = "application/json"


class TransientNetworkError(Exception):
    """Custom exception for transient network errors after retries."""

    pass


def check_credentials_directory_permissions(credentials_dir: Optional[str] = None) -> None:
    """
    Check that the credentials directory exists (or can be created) and is writable.

    Args:
        credentials_dir: Path to the credentials directory (default: GDRIVE_CREDENTIALS_DIR)

    Raises:
        PermissionError: If the service lacks necessary permissions
    """
    if credentials_dir is None:
        from auth.oauth_config import get_oauth_config

        credentials_dir = get_oauth_config().credentials_dir

    created = not os.path.exists(credentials_dir)
    test_file = os.path.join(credentials_dir, ".permission_test")
    try:
        os.makedirs(credentials_dir, mode=0o700, exist_ok=True)
        with open(test_file, "w") as f:
            f.write("test")
        os.remove(test_file)
    except OSError as e:
        if created and os.path.isdir(credentials_dir) and not os.listdir(credentials_dir):
            os.rmdir(credentials_dir)
        raise PermissionError(
            f"Cannot create or write to credentials directory '{os.path.abspath(credentials_dir)}': {e}"
        )
    logger.info(f"Credentials directory permissions check passed: {os.path.abspath(credentials_dir)}")


def _parse_json_body(raw: str) -> Dict[str, Any]:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("JSON body must be an object")
    return data


def _parse_form_body(raw: str) -> Dict[str, Any]:
    pairs = parse_qsl(raw, keep_blank_values=True, strict_parsing=True)
    return dict(pairs)


async def parse_request_body_leniently(request: Request) -> Dict[str, Any]:
    """
    Parse a JSON or URL-encoded body into a dict.

    The declared content type only decides which format is tried first. An
    empty body parses to {}.

    Raises:
        OAuthValidationError: If neither format parses
    """
    raw_bytes = await request.body()
    try:
        raw = raw_bytes.decode("utf-8").strip()
    except UnicodeDecodeError:
        raise OAuthValidationError("Request body is not valid UTF-8")
    if not raw:
        return {}

    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type == JSON_CONTENT_TYPE or raw.startswith("{"):
        parsers = (_parse_json_body, _parse_form_body)
    else:
        parsers = (_parse_form_body, _parse_json_body)

    for parser in parsers:
        try:
            return parser(raw)
        except ValueError as e:
            logger.debug(f"Body did not parse with {parser.__name__}: {e}")

    raise OAuthValidationError(f"Request body must be JSON or {FORM_CONTENT_TYPE}")


def get_api_enablement_message(error_details: str) -> str:
    """Message with a direct link to enable the Drive API, naming the project if known."""
    project_match = re.search(r'project[=\s]+([a-zA-Z0-9-]+)', error_details)
    project_id = project_match.group(1) if project_match else None
    return (
        f"Google Drive API is not enabled for your project"
        f"{f' ({project_id})' if project_id else ''}.\n\n"
        f"Enable it here: {DRIVE_API_ENABLEMENT_LINK}\n\n"
        f"After enabling, wait 1-2 minutes for the change to propagate, then try again."
    )


def handle_http_errors(tool_name: str, is_read_only: bool = False):
    """
    A decorator to handle Google API HttpErrors and transient SSL errors in a standardized way.

    It wraps a tool function, catches HttpError, logs a detailed error message,
    and raises a generic Exception with a user-friendly message.

    If is_read_only is True, it will also catch ssl.SSLError and retry with
    exponential backoff. After exhausting retries, it raises a TransientNetworkError.

    Args:
        tool_name (str): The name of the tool being decorated (e.g., 'search').
        is_read_only (bool): If True, the operation is considered safe to retry on
                             transient network errors. Defaults to False.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            max_retries = 3
            base_delay = 1

            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except ssl.SSLError as e:
                    if is_read_only and attempt < max_retries - 1:
                        delay = base_delay * (2**attempt)
                        logger.warning(
                            f"SSL error in {tool_name} on attempt {attempt + 1}: {e}. Retrying in {delay} seconds..."
                        )
                        await asyncio.sleep(delay)
                    else:
                        logger.error(f"SSL error in {tool_name} on final attempt: {e}. Raising exception.")
                        raise TransientNetworkError(
                            f"A transient SSL error occurred in '{tool_name}' after {max_retries} attempts. "
                            "This is likely a temporary network or certificate issue. Please try again shortly."
                        ) from e
                except HttpError as error:
                    error_details = str(error)

                    if error.resp.status == 403 and "accessNotConfigured" in error_details:
                        message = f"API error in {tool_name}: {get_api_enablement_message(error_details)}"
                    elif error.resp.status in [401, 403]:
                        message = (
                            f"API error in {tool_name}: {error}. "
                            f"The credentials for this request were rejected by Google Drive; "
                            f"re-authenticate and retry."
                        )
                    elif error.resp.status == 404:
                        message = f"API error in {tool_name}: file not found or not accessible ({error})"
                    else:
                        message = f"API error in {tool_name}: {error}"

                    logger.error(f"API error in {tool_name}: {error}", exc_info=True)
                    raise Exception(message) from error

        return wrapper

    return decorator
