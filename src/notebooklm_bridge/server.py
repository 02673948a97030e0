"""NotebookLM Bridge MCP Server."""

import argparse
import atexit
import base64
import functools
import json
import logging
import os
import secrets
from typing import Any

from fastmcp import FastMCP
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from . import __version__
from . import constants
from .catalog import CatalogRecord
from .runtime import BridgeRuntime

# MCP request/response logger
mcp_logger = logging.getLogger("notebooklm_bridge.mcp")

# Initialize MCP server
mcp = FastMCP(
    name="notebooklm-bridge",
    instructions="""NotebookLM Bridge - turn a video URL into NotebookLM summaries, answers and infographics.

**Auth:** If a call needs a Google login, a Chrome window opens for you to sign in; the call is then retried once. You can also run `notebooklm-bridge-login` beforehand.
**Context:** ask_question without a url uses the last notebook you worked with; target_topic switches by title or alias.
**Confirmation:** delete_notebook requires user approval before setting confirm=True.""",
)


# Health check endpoint for load balancers and monitoring
@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint for load balancers and monitoring."""
    return JSONResponse({
        "status": "healthy",
        "service": "notebooklm-bridge",
        "version": __version__,
    })


# Global state
_runtime: BridgeRuntime | None = None
_headless: bool | None = None
_api_key: str | None = os.environ.get("NOTEBOOKLM_API_KEY")


def validate_api_key(request: Request) -> JSONResponse | None:
    """Validate API key from Authorization header.

    Returns None if auth passes, JSONResponse with error if auth fails.
    """
    # Skip auth if no API key configured
    if not _api_key:
        return None

    # Allow health check without auth (for load balancers)
    if request.url.path == "/health":
        return None

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return JSONResponse(
            {"error": "Missing or invalid Authorization header. Use 'Bearer <api_key>'"},
            status_code=401,
        )

    provided_key = auth_header[7:]  # Remove "Bearer " prefix
    if not secrets.compare_digest(provided_key, _api_key):
        return JSONResponse({"error": "Invalid API key"}, status_code=401)

    return None


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce API key authentication for HTTP transport."""

    async def dispatch(self, request: Request, call_next):
        auth_error = validate_api_key(request)
        if auth_error:
            return auth_error
        return await call_next(request)


def logged_tool():
    """Decorator that combines @mcp.tool() with MCP request/response logging."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            tool_name = func.__name__
            if mcp_logger.isEnabledFor(logging.DEBUG):
                params = {k: v for k, v in kwargs.items() if v is not None}
                mcp_logger.debug(f"MCP Request: {tool_name}({json.dumps(params, default=str)})")

            result = func(*args, **kwargs)

            if mcp_logger.isEnabledFor(logging.DEBUG):
                # Truncate long responses (base64 images)
                result_str = json.dumps(result, default=str)
                if len(result_str) > 1000:
                    result_str = result_str[:1000] + "..."
                mcp_logger.debug(f"MCP Response: {tool_name} -> {result_str}")

            return result
        return mcp.tool()(wrapper)
    return decorator


def get_runtime() -> BridgeRuntime:
    """Get or create the process's runtime (one browser profile per process)."""
    global _runtime
    if _runtime is None:
        _runtime = BridgeRuntime(headless=_headless)
        atexit.register(_runtime.close)
    return _runtime


def _report_progress(status: str) -> None:
    mcp_logger.info(f"[Progress] {status}")


def _resolve_notebook(runtime: BridgeRuntime, target: str) -> CatalogRecord | None:
    """Resolve a URL or a topic keyword to a catalog record."""
    if target.startswith("http"):
        return runtime.catalog.find_by_reference(target)
    return runtime.catalog.find(target)


def _guess_mime_type(data: bytes) -> str:
    if data.startswith(b"\x89PNG"):
        return "image/png"
    if data.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


@logged_tool()
def generate_summary(url: str) -> dict[str, Any]:
    """Summarize a YouTube video (or any web source) with NotebookLM.

    Reuses the video's notebook when it was prepared before. Return the
    summary to the user verbatim.

    Args:
        url: The URL of the YouTube video
    """
    try:
        runtime = get_runtime()
        summary = runtime.run(lambda: runtime.workflow.generate_summary(url, _report_progress))
        return {
            "status": "success",
            "source": url,
            "format": "markdown",
            "summary": summary,
            "instruction": "Return this text verbatim to the user.",
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def ask_question(
    question: str,
    url: str | None = None,
    target_topic: str | None = None,
) -> dict[str, Any]:
    """Ask a question about a video's notebook.

    Args:
        question: The question to ask
        url: Optional video URL. If omitted, uses the last accessed notebook.
        target_topic: Optional keyword or alias to switch context (e.g. 'gaming')
    """
    try:
        runtime = get_runtime()

        notebook = None
        if url:
            notebook = runtime.catalog.find_by_reference(url)
        elif target_topic:
            notebook = runtime.catalog.find(target_topic)
            if not notebook:
                topics = ", ".join(
                    n.title or (n.aliases[0] if n.aliases else "Untitled") for n in runtime.catalog.list()
                )
                return {
                    "status": "error",
                    "error": f"No notebook found for '{target_topic}'. Known topics: {topics or 'none'}",
                }
        else:
            notebook = runtime.catalog.last_accessed()
            if not notebook:
                return {
                    "status": "error",
                    "error": "No active notebook context. Provide a url to start.",
                }

        target_url = url or notebook.source_ref
        if not target_url:
            return {"status": "error", "error": "Could not resolve a source URL."}
        if notebook:
            runtime.catalog.touch(notebook.id)

        answer = runtime.run(lambda: runtime.workflow.query(target_url, question))
        return {
            "status": "success",
            "source": target_url,
            "notebook_id": notebook.id if notebook else None,
            "answer": answer,
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def generate_infographic(
    url: str,
    orientation: str = "landscape",
    detail_level: str = "standard",
    include_image: bool = True,
) -> dict[str, Any]:
    """Generate an infographic for a YouTube video. Takes a few minutes.

    Args:
        url: The URL of the YouTube video
        orientation: landscape|portrait|square
        detail_level: concise|standard|detailed
        include_image: Also download the image and return it base64-encoded
    """
    try:
        runtime = get_runtime()
        image_url = runtime.run(
            lambda: runtime.workflow.generate_artifact(url, _report_progress, orientation, detail_level)
        )
        result = {
            "status": "success",
            "source": url,
            "orientation": orientation,
            "detail_level": detail_level,
            "image_url": image_url,
        }
        if include_image and image_url.startswith(constants.INLINE_IMAGE_PREFIX):
            header, _, encoded = image_url.partition(",")
            result["image_base64"] = encoded
            result["mime_type"] = header[len("data:"):].split(";")[0]
        elif include_image:
            try:
                data = runtime.run(lambda: runtime.workflow.download_artifact(image_url))
            except Exception as e:
                mcp_logger.warning(f"Image download failed (returning link only): {e}")
                result["note"] = f"Image download failed, but the infographic is available at {image_url}"
            else:
                result["image_base64"] = base64.b64encode(data).decode("ascii")
                result["mime_type"] = _guess_mime_type(data)
        return result
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def list_notebooks() -> dict[str, Any]:
    """List notebooks prepared by this bridge, most recently used first."""
    try:
        notebooks = get_runtime().catalog.list()
        return {
            "status": "success",
            "count": len(notebooks),
            "notebooks": [
                {
                    "id": nb.id,
                    "title": nb.title,
                    "aliases": nb.aliases,
                    "source": nb.source_ref,
                    "url": f"{constants.BASE_URL}/notebook/{nb.id}",
                }
                for nb in notebooks
            ],
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
def delete_notebook(target: str, confirm: bool = False) -> dict[str, Any]:
    """Delete a notebook permanently. IRREVERSIBLE. Requires confirm=True.

    Args:
        target: The video URL or topic keyword of the notebook
        confirm: Must be True after user approval
    """
    if not confirm:
        return {
            "status": "error",
            "error": "Deletion not confirmed. You must ask the user to confirm "
                     "before deleting. Set confirm=True only after user approval.",
            "warning": "This action is IRREVERSIBLE. The notebook and all its "
                       "sources will be permanently deleted.",
        }

    try:
        runtime = get_runtime()
        notebook = _resolve_notebook(runtime, target)
        if not notebook:
            return {"status": "error", "error": f"No notebook found for '{target}'."}

        runtime.run(lambda: runtime.workflow.delete_remote(notebook.id))
        runtime.catalog.remove(notebook.id)
        for source_ref in runtime.cache.find_by_workspace(notebook.id):
            runtime.cache.remove(source_ref)

        return {
            "status": "success",
            "message": f"Notebook '{notebook.title}' ({notebook.id}) has been permanently deleted.",
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


def main():
    """Run the MCP server.

    Supports multiple transports:
    - stdio (default): For desktop apps like Claude Desktop
    - http: Streamable HTTP for network access
    - sse: Legacy SSE transport (backwards compatibility)

    Configuration via CLI args or environment variables.
    """
    parser = argparse.ArgumentParser(
        description="NotebookLM Bridge MCP Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  NOTEBOOKLM_MCP_TRANSPORT     Transport type (stdio, http, sse)
  NOTEBOOKLM_MCP_HOST          Host to bind (default: 127.0.0.1)
  NOTEBOOKLM_MCP_PORT          Port to listen on (default: 8000)
  NOTEBOOKLM_MCP_PATH          MCP endpoint path (default: /mcp)
  NOTEBOOKLM_MCP_DEBUG         Enable debug logging for MCP + API traffic (true/false)
  NOTEBOOKLM_HEADLESS          Run Chrome headless (default: true)
  NOTEBOOKLM_BRIDGE_HOME       Data directory (default: ~/.notebooklm-bridge)

Examples:
  notebooklm-bridge                              # Default stdio transport
  notebooklm-bridge --transport http             # HTTP on localhost:8000
  notebooklm-bridge --transport http --port 3000 # HTTP on custom port
  notebooklm-bridge --show-browser               # Visible Chrome window
  notebooklm-bridge --debug                      # Log MCP calls + NotebookLM API traffic

        """
    )

    parser.add_argument(
        "--transport", "-t",
        choices=["stdio", "http", "sse"],
        default=os.environ.get("NOTEBOOKLM_MCP_TRANSPORT", "stdio"),
        help="Transport protocol (default: stdio)"
    )
    parser.add_argument(
        "--host", "-H",
        default=os.environ.get("NOTEBOOKLM_MCP_HOST", "127.0.0.1"),
        help="Host to bind for HTTP/SSE (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=int(os.environ.get("NOTEBOOKLM_MCP_PORT", "8000")),
        help="Port for HTTP/SSE transport (default: 8000)"
    )
    parser.add_argument(
        "--path",
        default=os.environ.get("NOTEBOOKLM_MCP_PATH", "/mcp"),
        help="MCP endpoint path for HTTP (default: /mcp)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=os.environ.get("NOTEBOOKLM_MCP_DEBUG", "").lower() == "true",
        help="Enable debug logging (MCP tool calls + NotebookLM API requests/responses)"
    )
    parser.add_argument(
        "--show-browser",
        action="store_true",
        help="Run Chrome with a visible window instead of headless"
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("NOTEBOOKLM_API_KEY"),
        help="API key for authentication (also via NOTEBOOKLM_API_KEY env var)"
    )
    args = parser.parse_args()

    global _api_key, _headless
    _api_key = args.api_key
    if args.show_browser:
        _headless = False

    # Configure logging
    if args.debug:
        logging.basicConfig(
            level=logging.WARNING,  # Suppress most logs
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

        mcp_logger.setLevel(logging.DEBUG)
        mcp_logger.addHandler(handler)

        # Browser, session and workflow progress
        for name in ("browser", "session", "workflow"):
            component_logger = logging.getLogger(f"notebooklm_bridge.{name}")
            component_logger.setLevel(logging.INFO)
            component_logger.addHandler(handler)

        # Raw RPC traffic between the bridge and NotebookLM
        api_logger = logging.getLogger("notebooklm_bridge.api")
        api_logger.setLevel(logging.DEBUG)
        api_logger.addHandler(handler)

        print("Debug logging: ENABLED (MCP tool calls + NotebookLM API requests/responses)")

    if args.transport in ("http", "sse"):
        endpoint = args.path if args.transport == "http" else "/sse"
        print(f"Starting NotebookLM Bridge MCP server ({args.transport.upper()}) on http://{args.host}:{args.port}{endpoint}")
        print(f"Health check: http://{args.host}:{args.port}/health")
        if _api_key:
            print("API key authentication: ENABLED")
        else:
            print("WARNING: No API key set. Server is publicly accessible!")
            print("         Use --api-key or NOTEBOOKLM_API_KEY to secure your server.")

        # Get ASGI app and wrap with auth middleware if API key is set
        if _api_key:
            import uvicorn

            if args.transport == "http":
                base_app = mcp.http_app(path=args.path)
            else:
                base_app = mcp.http_app(transport="sse")
            uvicorn.run(APIKeyAuthMiddleware(base_app), host=args.host, port=args.port)
        elif args.transport == "http":
            mcp.run(transport="http", host=args.host, port=args.port, path=args.path)
        else:
            mcp.run(transport="sse", host=args.host, port=args.port)
    else:
        # Default: stdio transport (no message - stdio should be silent)
        mcp.run()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
