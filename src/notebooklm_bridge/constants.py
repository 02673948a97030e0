"""
Constants and mappings for the NotebookLM internal RPC protocol.

This module is the single source of truth for endpoints, RPC ids, wire
markers, payload templates and code mappings. It decouples protocol data
from the transport and workflow logic.
"""

BASE_URL = "https://notebooklm.google.com"
BATCHEXECUTE_URL = f"{BASE_URL}/_/LabsTailwindUi/data/batchexecute"

# Long-running generation endpoint (streamed, un-delimited JSON fragments)
STREAMED_URL = (
    f"{BASE_URL}/_/LabsTailwindUi/data/"
    "google.internal.labs.tailwind.orchestration.v1.LabsTailwindOrchestrationService/"
    "GenerateFreeFormStreamed"
)

LOGIN_HOST = "accounts.google.com"
PRODUCT_URL_PATTERN = r"^https://notebooklm\.google\.com/"

# Text that only renders on the dashboard once the user is logged in
DASHBOARD_MARKER = "Create new"


class CodeMapper:
    """
    Name-to-code mapping for API options.

    Handles strict validation, normalization (case-insensitivity), and
    human-readable error messages.
    """

    def __init__(self, mapping: dict[str, int]):
        # Store as lower-case keys for case-insensitive lookup
        self._name_to_code: dict[str, int] = {k.lower(): v for k, v in mapping.items()}
        self._display_names = sorted(mapping.keys())

    def get_code(self, name: str) -> int:
        """
        Get integer code for a string name.

        Args:
            name: The string name (case-insensitive).

        Returns:
            The corresponding integer code.

        Raises:
            ValueError: If the name is unknown.
        """
        if not name:
            raise ValueError(f"Invalid name: '{name}'. Must be one of: {self.options_str}")

        code = self._name_to_code.get(name.lower())
        if code is None:
            raise ValueError(f"Unknown name '{name}'. Must be one of: {self.options_str}")
        return code

    @property
    def options_str(self) -> str:
        """Return comma-separated list of valid options."""
        return ", ".join(self._display_names)


# =============================================================================
# RPC ids
# =============================================================================
RPC_CREATE_NOTEBOOK = "CCqFvf"
RPC_ADD_SOURCE = "izAoDd"
RPC_CREATE_STUDIO = "R7cb6c"    # Triggers studio generation (infographic)
RPC_LIST_ARTIFACTS = "gArtLc"
RPC_DELETE_NOTEBOOK = "f61S6e"

# RPC ID to method name mapping for debug logging
RPC_NAMES = {
    RPC_CREATE_NOTEBOOK: "create_notebook",
    RPC_ADD_SOURCE: "add_source",
    RPC_CREATE_STUDIO: "create_studio",
    RPC_LIST_ARTIFACTS: "list_artifacts",
    RPC_DELETE_NOTEBOOK: "delete_notebook",
}

# =============================================================================
# Wire format
# =============================================================================
REPLY_TAG = "wrb.fr"
XSSI_PREFIX = ")]}'"
ENVELOPE_KIND = "generic"
RESPONSE_TRANSPORT = "c"
AUTH_ERROR_CODE = 16

DEFAULT_LOCALE = "en"
# Used only until the first token scrape supplies the real build label
FALLBACK_BUILD_LABEL = "boq_labs-tailwind-frontend_20260108.06_p0"

# Token markers in the rendered dashboard page
CSRF_PATTERN = r'"SNlM0e":"([^"]+)"'
BUILD_LABEL_PATTERNS = [
    r'"(boq_labs-tailwind-[^"]+)"',
    r'"cfb2h":"([^"]+)"',
]
SESSION_ID_PATTERN = r'"FdrFJe":"([^"]+)"'

# =============================================================================
# Extraction heuristics
# =============================================================================
MEDIA_HOST_FRAGMENT = "googleusercontent.com"
INLINE_IMAGE_PREFIX = "data:image/"
IDENTIFIER_LENGTH = 36
SOURCE_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"

# =============================================================================
# Payload templates
# =============================================================================
# Project settings block shared by create-notebook and add-source
PROJECT_SETTINGS = [1, None, None, None, None, None, None, None, None, None, [1]]

ARTIFACT_FILTER = 'NOT artifact.status = "ARTIFACT_STATUS_SUGGESTED"'

# =============================================================================
# Studio / Infographic
# =============================================================================
STUDIO_TYPE_INFOGRAPHIC = 7

INFOGRAPHIC_ORIENTATION_LANDSCAPE = 1
INFOGRAPHIC_ORIENTATION_PORTRAIT = 2
INFOGRAPHIC_ORIENTATION_SQUARE = 3

INFOGRAPHIC_ORIENTATIONS = CodeMapper({
    "landscape": INFOGRAPHIC_ORIENTATION_LANDSCAPE,
    "portrait": INFOGRAPHIC_ORIENTATION_PORTRAIT,
    "square": INFOGRAPHIC_ORIENTATION_SQUARE,
})

INFOGRAPHIC_DETAIL_CONCISE = 1
INFOGRAPHIC_DETAIL_STANDARD = 2
INFOGRAPHIC_DETAIL_DETAILED = 3

INFOGRAPHIC_DETAILS = CodeMapper({
    "concise": INFOGRAPHIC_DETAIL_CONCISE,
    "standard": INFOGRAPHIC_DETAIL_STANDARD,
    "detailed": INFOGRAPHIC_DETAIL_DETAILED,
})

# =============================================================================
# Workflow timing
# =============================================================================
DEFAULT_TIMEOUT = 30.0
STREAMED_TIMEOUT = 120.0
NAVIGATION_TIMEOUT = 30.0
LOGIN_REDIRECT_GRACE = 5.0
TOKEN_RESCRAPE_DELAY = 2.0
LOGIN_TIMEOUT = 300.0

INGESTION_SETTLE_DELAY = 5.0
QUERY_SETTLE_DELAY = 2.0
SUMMARY_SETTLE_DELAY = 10.0
POLL_ATTEMPTS = 30
POLL_INTERVAL = 10.0

SUMMARY_PROMPT = "give me summary of the video"
DEGRADED_ANSWER = "Failed to generate answer."
