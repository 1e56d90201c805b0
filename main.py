import argparse
import logging
import os
import socket
import sys
from dotenv import load_dotenv

from auth.credential_store import (
    get_credential_store,
    get_preauth_credentials,
    load_client_config,
    validate_user_id,
)
from auth.oauth_config import reload_oauth_config
from auth.oauth_error_handling import OAuthConfigurationError
from auth.oauth_types import AuthPolicy
from auth.scopes import SCOPES
from core.context import set_stdio_credentials
from core.log_formatter import EnhancedLogFormatter, configure_file_logging, setup_enhanced_logging
from core.utils import check_credentials_directory_permissions
from core.server import build_http_app, get_version, server, set_transport_mode

dotenv_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env')
load_dotenv(dotenv_path=dotenv_path)

# Suppress googleapiclient discovery cache warning
logging.getLogger('googleapiclient.discovery_cache').setLevel(logging.ERROR)

reload_oauth_config()

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

configure_file_logging()


def safe_print(text):
    # stdout/stderr belong to the MCP client when there is no TTY
    if not sys.stderr.isatty():
        logger.debug(f"[MCP Server] {text}")
        return

    try:
        print(text, file=sys.stderr)
    except UnicodeEncodeError:
        print(text.encode('ascii', errors='replace').decode(), file=sys.stderr)


def configure_safe_logging():
    class SafeEnhancedFormatter(EnhancedLogFormatter):
        """Enhanced ASCII formatter with additional Windows safety."""
        def format(self, record):
            try:
                return super().format(record)
            except UnicodeEncodeError:
                service_prefix = self._get_ascii_prefix(record.name, record.levelname)
                safe_msg = str(record.getMessage()).encode('ascii', errors='replace').decode('ascii')
                return f"{service_prefix} {safe_msg}"

    setup_enhanced_logging()
    for handler in logging.root.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler.stream, 'name', None) in ['<stderr>', '<stdout>']:
            handler.setFormatter(SafeEnhancedFormatter(use_colors=True))


def redact(value, visible: int = 4) -> str:
    if not value:
        return 'Not Set'
    return f"{value[:visible]}...{value[-visible:]}" if len(value) > visible * 2 else "Invalid or too short"


def list_users() -> int:
    users = get_credential_store().list_users()
    if not users:
        print("No authenticated users found.")
        print("Run with --auth-user <USER_ID> to authorize one.")
        return 0
    print(f"Found {len(users)} user(s):")
    for user_id in users:
        print(f"  - {user_id}")
    return 0


def remove_user(user_id: str) -> int:
    try:
        validate_user_id(user_id)
    except ValueError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    if user_id not in get_credential_store().list_users():
        print(f"No stored credentials for '{user_id}'.")
        return 1
    if not get_credential_store().delete_credential(user_id):
        print(f"❌ Failed to remove credentials for '{user_id}'", file=sys.stderr)
        return 1
    print(f"🗑️  Removed credentials for '{user_id}'")
    return 0


def authorize_user(user_id: str) -> int:
    """Run the installed-app consent flow and store the resulting credentials."""
    from google_auth_oauthlib.flow import InstalledAppFlow

    try:
        validate_user_id(user_id)
        client_config = load_client_config()
    except (ValueError, OAuthConfigurationError) as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    print(f"🔐 Authorizing Google Drive access for user '{user_id}'...")
    flow = InstalledAppFlow.from_client_config(client_config, SCOPES)
    credentials = flow.run_local_server(port=0, access_type="offline", prompt="consent")

    if not get_credential_store().store_credential(user_id, credentials):
        print(f"❌ Failed to store credentials for '{user_id}'", file=sys.stderr)
        return 1
    print(f"✅ Credentials stored for '{user_id}'")
    return 0


def main():
    """
    Main entry point for the Google Drive MCP server.
    Serves MCP over stdio, or over HTTP (SSE and Streamable HTTP) behind the OAuth proxy.
    """
    configure_safe_logging()

    parser = argparse.ArgumentParser(description='Google Drive MCP Server')
    parser.add_argument('--transport', choices=['stdio', 'http'], default='stdio',
                        help='Transport mode: stdio (default) or http (SSE + Streamable HTTP)')
    parser.add_argument('--port', type=int, default=None,
                        help='HTTP port (default: PORT or 8000)')
    parser.add_argument('--host', default=None,
                        help='HTTP bind address (default: GDRIVE_MCP_HOST or 0.0.0.0)')
    parser.add_argument('--auth-policy', choices=[p.value for p in AuthPolicy], default=None,
                        help='Bearer authentication policy (default: MCP_AUTH_POLICY or required)')
    parser.add_argument('--auth-user', metavar='USER_ID',
                        help='Authorize a user through the browser and store their credentials, then exit')
    parser.add_argument('--remove-user', metavar='USER_ID',
                        help='Delete the stored credentials of a user, then exit')
    parser.add_argument('--list-users', action='store_true',
                        help='List users with stored credentials, then exit')
    args = parser.parse_args()

    if args.auth_policy:
        os.environ['MCP_AUTH_POLICY'] = args.auth_policy
    config = reload_oauth_config()

    if args.list_users:
        sys.exit(list_users())
    if args.auth_user:
        sys.exit(authorize_user(args.auth_user))
    if args.remove_user:
        sys.exit(remove_user(args.remove_user))

    # Registers the Drive tools and resource with the server
    import gdrive.drive_tools  # noqa: F401

    port = args.port or config.port
    host = args.host or config.host
    display_url = config.external_url or f"{config.base_uri}:{port}"

    safe_print("🔧 Google Drive MCP Server")
    safe_print("=" * 35)
    safe_print("📋 Server Information:")
    safe_print(f"   📦 Version: {get_version()}")
    safe_print(f"   🌐 Transport: {args.transport}")
    if args.transport == 'http':
        safe_print(f"   🔗 URL: {display_url}")
        safe_print(f"   🔐 OAuth Callback: {display_url}/oauth/callback")
        safe_print(f"   🛡️ Auth Policy: {config.auth_policy.value}")
    safe_print(f"   🐍 Python: {sys.version.split()[0]}")
    safe_print("")

    safe_print("⚙️ Active Configuration:")
    config_vars = {
        "GOOGLE_OAUTH_CLIENT_ID": os.getenv('GOOGLE_OAUTH_CLIENT_ID', 'Not Set'),
        "GOOGLE_OAUTH_CLIENT_SECRET": redact(os.getenv('GOOGLE_OAUTH_CLIENT_SECRET')),
        "GDRIVE_OAUTH": 'Set' if config.oauth_keys_json else 'Not Set',
        "GDRIVE_OAUTH_PATH": config.oauth_keys_path,
        "GDRIVE_CREDENTIALS_DIR": config.credentials_dir,
        "GDRIVE_DEFAULT_USER": config.default_user,
        "GDRIVE_EXTERNAL_URL": config.external_url or 'Not Set',
    }
    for key, value in config_vars.items():
        safe_print(f"   - {key}: {value}")
    logger.debug(f"Configuration: {config.get_environment_summary()}")
    safe_print("")

    try:
        safe_print("🔍 Checking credentials directory permissions...")
        check_credentials_directory_permissions()
        safe_print("✅ Credentials directory permissions verified")
        safe_print("")
    except (PermissionError, OSError) as e:
        safe_print(f"❌ Credentials directory permission check failed: {e}")
        logger.error(f"Failed credentials directory permission check: {e}")
        sys.exit(1)

    try:
        set_transport_mode(args.transport)

        if args.transport == 'http':
            import uvicorn

            try:
                with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                    s.bind((host, port))
            except OSError as e:
                safe_print(f"Socket error: {e}")
                safe_print(f"❌ Port {port} is already in use. Cannot start HTTP server.")
                sys.exit(1)

            safe_print(f"🚀 Starting HTTP server on {host}:{port}")
            safe_print(f"   SSE: {display_url}/sse  Streamable HTTP: {display_url}/mcp")
            safe_print("✅ Ready for MCP connections")
            uvicorn.run(build_http_app(), host=host, port=port, log_level="info")
        else:
            user_id = config.default_user
            credentials = get_preauth_credentials(user_id)
            if credentials is None:
                safe_print(f"⚠️  No credentials for user '{user_id}'. Run with --auth-user {user_id} first.")
                logger.warning(f"Starting stdio server without credentials for {user_id}")
            set_stdio_credentials(credentials, user_id)
            safe_print("🚀 Starting STDIO server")
            server.run()
    except KeyboardInterrupt:
        safe_print("\n👋 Server shutdown requested")
        sys.exit(0)
    except Exception as e:
        safe_print(f"\n❌ Server error: {e}")
        logger.error(f"Unexpected error running server: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
