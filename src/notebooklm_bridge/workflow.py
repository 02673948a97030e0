"""Notebook workflows: create -> add source -> trigger -> poll, and querying.

Each public operation turns a multi-step remote sequence into one blocking
call. Setup work is cached per source reference as soon as it succeeds, so
a later failure (or a retry after login) never repeats it.
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, TypeVar

import httpx

from . import constants
from .cache import CacheEntry, SourceCache
from .catalog import Catalog, CatalogRecord
from .exceptions import (
    AddSourceFailed,
    AuthenticationRequired,
    BrowserError,
    PollTimeout,
    RpcInvalidResponse,
    RpcTransportError,
    StreamedParseEmpty,
)
from .parser import find_image_url, find_source_id, frame_payload, parse_streamed_response
from .transport import RpcTransport
from .values import Array, string_value

logger = logging.getLogger("notebooklm_bridge.workflow")

T = TypeVar("T")

ProgressSink = Callable[[str], None]


class WorkflowState(Enum):
    IDLE = "idle"
    CREATING = "creating"
    ADDING_SOURCE = "adding_source"
    WAITING_FOR_INGESTION = "waiting_for_ingestion"
    TRIGGERING = "triggering"
    POLLING = "polling"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PreparedSource:
    """A source registered in a remote notebook."""
    workspace_id: str
    source_id: str


@dataclass
class PollOutcome:
    """Result of one list-artifacts attempt."""
    attempt: int
    total: int
    url: str | None = None
    error: Exception | None = None


def run_with_login_retry(operation: Callable[[], T], login: Callable[[], None]) -> T:
    """Run ``operation``; on AuthenticationRequired log in once and run it once more.

    Any error from the second attempt, including another
    AuthenticationRequired, propagates unmodified.
    """
    try:
        return operation()
    except AuthenticationRequired as e:
        logger.warning(f"Authentication required ({e}); running login procedure")
    login()
    return operation()


def _resolve_title(browser, source_ref: str) -> str:
    """Best-effort page title for the catalog; falls back to the reference itself."""
    if browser is None or not source_ref.startswith("http"):
        return source_ref
    try:
        response = browser.http_request("GET", source_ref, timeout=10.0)
    except (httpx.HTTPError, httpx.InvalidURL, BrowserError) as e:
        logger.warning(f"Title lookup failed for {source_ref}: {e}")
        return source_ref
    if not response.ok:
        return source_ref
    match = re.search(r"<title>(.*?)</title>", response.text, re.DOTALL)
    if not match or not match.group(1).strip():
        return source_ref
    return match.group(1).replace(" - YouTube", "").strip()


class NotebookWorkflow:
    """Orchestrates NotebookLM workflows over an RpcTransport.

    Args:
        transport: Borrowed transport (shares the process's BrowserSession).
        cache: Source cache; the workflow owns its read-modify-write cycle.
        catalog: Optional catalog refreshed after every successful prepare.
        progress: Default progress sink for phase transitions.
        sleep: Injectable delay function (tests pass a recorder).
    """

    def __init__(
        self,
        transport: RpcTransport,
        cache: SourceCache,
        catalog: Catalog | None = None,
        progress: ProgressSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
        ingestion_delay: float = constants.INGESTION_SETTLE_DELAY,
        query_delay: float = constants.QUERY_SETTLE_DELAY,
        summary_delay: float = constants.SUMMARY_SETTLE_DELAY,
        poll_attempts: int = constants.POLL_ATTEMPTS,
        poll_interval: float = constants.POLL_INTERVAL,
    ):
        self.transport = transport
        self.cache = cache
        self.catalog = catalog
        self.progress = progress
        self._sleep = sleep
        self.ingestion_delay = ingestion_delay
        self.query_delay = query_delay
        self.summary_delay = summary_delay
        self.poll_attempts = poll_attempts
        self.poll_interval = poll_interval
        self.state = WorkflowState.IDLE

    def _report(self, on_progress: ProgressSink | None, status: str) -> None:
        sink = on_progress or self.progress
        if sink:
            sink(status)

    # =========================================================================
    # Prepare
    # =========================================================================

    def prepare_source(self, source_ref: str, on_progress: ProgressSink | None = None) -> PreparedSource:
        """Ensure ``source_ref`` is registered in a notebook and return both ids.

        A fully cached reference costs zero RPC calls.

        Raises:
            RpcInvalidResponse: If create-notebook returns no id.
            AddSourceFailed: If no source id can be recovered from add-source.
        """
        entry = self.cache.get(source_ref) or CacheEntry()
        if entry.is_complete:
            logger.info(f"Cache hit! Reusing notebook {entry.workspace_id}, source {entry.source_id}")
            self._register(source_ref, entry.workspace_id, entry.source_id)
            return PreparedSource(entry.workspace_id, entry.source_id)

        try:
            workspace_id = entry.workspace_id
            if workspace_id:
                logger.info(f"Cache hit! Reusing notebook {workspace_id} (source pending)")
            else:
                workspace_id = self._create_notebook(on_progress)

            source_id = self._add_source(workspace_id, source_ref, on_progress)
        except Exception:
            self.state = WorkflowState.FAILED
            raise

        # Persist before anything else can fail
        self.cache.set(source_ref, CacheEntry(workspace_id=workspace_id, source_id=source_id))
        self._register(source_ref, workspace_id, source_id)
        return PreparedSource(workspace_id, source_id)

    def _create_notebook(self, on_progress: ProgressSink | None) -> str:
        self.state = WorkflowState.CREATING
        logger.info("Creating notebook...")
        self._report(on_progress, "Creating new notebook...")

        payload = ["", None, None, [2], constants.PROJECT_SETTINGS]
        frame = self.transport.call(constants.RPC_CREATE_NOTEBOOK, payload)
        result = frame_payload(frame)

        # Notebook id sits at position 2: [title, sources, id, ...]
        workspace_id = string_value(result.get(2)) if isinstance(result, Array) else None
        if not workspace_id:
            raise RpcInvalidResponse("Create notebook response carries no notebook id")
        logger.info(f"Notebook created: {workspace_id}")
        return workspace_id

    def _add_source(self, workspace_id: str, source_ref: str, on_progress: ProgressSink | None) -> str:
        self.state = WorkflowState.ADDING_SOURCE
        logger.info(f"Adding source: {source_ref}...")
        self._report(on_progress, "Adding source...")

        # The reference goes in the URL slot at position 7
        source_data = [None, None, None, None, None, None, None, [source_ref], None, None, 1]
        payload = [[source_data], workspace_id, [2], constants.PROJECT_SETTINGS]
        try:
            frame = self.transport.call(constants.RPC_ADD_SOURCE, payload, f"/notebook/{workspace_id}")
            result = frame_payload(frame)
        except RpcInvalidResponse as e:
            raise AddSourceFailed(f"Failed to add source {source_ref}: {e}") from e

        # The id's position varies by source type, so search the whole structure
        source_id = find_source_id(result)
        if not source_id:
            raise AddSourceFailed(f"Failed to add source {source_ref} (no source id in response)")
        logger.info(f"Source added: {source_id}")
        return source_id

    def _register(self, source_ref: str, workspace_id: str, source_id: str) -> None:
        if self.catalog is None:
            return
        existing = self.catalog.find_by_reference(source_ref)
        if existing and existing.id == workspace_id:
            self.catalog.touch(workspace_id)
            return
        title = _resolve_title(self.transport.browser, source_ref)
        self.catalog.add(CatalogRecord(
            id=workspace_id,
            source_id=source_id,
            source_ref=source_ref,
            title=title,
        ))

    # =========================================================================
    # Artifacts
    # =========================================================================

    def generate_artifact(
        self,
        source_ref: str,
        on_progress: ProgressSink | None = None,
        orientation: str = "landscape",
        detail_level: str = "standard",
    ) -> str:
        """Generate an infographic for ``source_ref`` and return its image URL.

        Raises:
            ValueError: If orientation or detail_level is unknown.
            PollTimeout: If the artifact does not appear within the poll window.
        """
        orientation_code = constants.INFOGRAPHIC_ORIENTATIONS.get_code(orientation)
        detail_code = constants.INFOGRAPHIC_DETAILS.get_code(detail_level)

        prepared = self.prepare_source(source_ref, on_progress)

        self.state = WorkflowState.WAITING_FOR_INGESTION
        logger.info(f"Waiting {self.ingestion_delay}s for source ingestion...")
        self._report(on_progress, "Waiting for source to process...")
        self._sleep(self.ingestion_delay)

        self.state = WorkflowState.TRIGGERING
        logger.info("Triggering infographic...")
        self._report(on_progress, "Triggering infographic generation...")
        content = [
            None, None,
            constants.STUDIO_TYPE_INFOGRAPHIC,
            [[[prepared.source_id]]],
            None, None, None, None, None, None, None, None, None, None,  # positions 4-13
            [[None, None, None, orientation_code, detail_code]],  # position 14
        ]
        self.transport.call(
            constants.RPC_CREATE_STUDIO,
            [[2], prepared.workspace_id, content],
            f"/notebook/{prepared.workspace_id}",
        )

        return self.poll_for_artifact(prepared.workspace_id, on_progress)

    def list_artifacts(self, workspace_id: str) -> str | None:
        """One list-artifacts call; returns the first image URL or None."""
        params = [[2], workspace_id, constants.ARTIFACT_FILTER]
        frame = self.transport.call(constants.RPC_LIST_ARTIFACTS, params, f"/notebook/{workspace_id}")
        return find_image_url(frame_payload(frame))

    def poll_outcomes(self, workspace_id: str) -> Iterator[PollOutcome]:
        """Lazily issue up to ``poll_attempts`` list-artifacts calls, one per item consumed.

        Transient failures become outcomes carrying the error; authentication
        failures propagate.
        """
        for attempt in range(1, self.poll_attempts + 1):
            try:
                url = self.list_artifacts(workspace_id)
            except (RpcInvalidResponse, RpcTransportError) as e:
                logger.warning(f"Poll attempt {attempt}/{self.poll_attempts} failed: {e}")
                yield PollOutcome(attempt, self.poll_attempts, error=e)
            else:
                yield PollOutcome(attempt, self.poll_attempts, url=url)

    def poll_for_artifact(self, workspace_id: str, on_progress: ProgressSink | None = None) -> str:
        """Drive ``poll_outcomes`` at a fixed interval until an image URL appears.

        Raises:
            PollTimeout: If every attempt came back empty.
        """
        self.state = WorkflowState.POLLING
        logger.info("Polling for artifacts...")
        self._report(on_progress, "Polling for generated infographic...")

        for outcome in self.poll_outcomes(workspace_id):
            if outcome.url:
                logger.info(f"Image found: {outcome.url[:80]}")
                self.state = WorkflowState.DONE
                return outcome.url
            if outcome.attempt < outcome.total:
                self._sleep(self.poll_interval)
                logger.info(f"Poll attempt {outcome.attempt}/{outcome.total}...")
                self._report(on_progress, f"Waiting for generation (attempt {outcome.attempt}/{outcome.total})...")

        self.state = WorkflowState.FAILED
        raise PollTimeout(
            f"Timeout waiting for artifact creation after {self.poll_attempts} attempts"
        )

    def download_artifact(self, url: str) -> bytes:
        """Download an artifact (e.g. the infographic image) with the browser's cookies.

        Raises:
            RpcTransportError: On network failure or a non-2xx status.
        """
        logger.info(f"Downloading resource: {url[:50]}...")
        try:
            response = self.transport.browser.http_request(
                "GET", url, headers={"Referer": f"{constants.BASE_URL}/"}
            )
        except httpx.HTTPError as e:
            raise RpcTransportError(f"Failed to download artifact: {e}") from e
        if not response.ok:
            raise RpcTransportError(f"Failed to download artifact: HTTP {response.status}", status=response.status)
        return response.content

    # =========================================================================
    # Queries
    # =========================================================================

    def query_workspace(self, workspace_id: str, source_id: str, question: str) -> str:
        """Ask ``question`` against one source through the streamed endpoint.

        Raises:
            StreamedParseEmpty: If no text could be extracted from the response.
        """
        logger.info(f"Querying notebook {workspace_id}: {question[:80]!r}")
        inner = [
            [[[source_id]]],
            question,
            None,
            [2, None, [1], [1]],
            None, None, None,
            workspace_id,
            1,
        ]
        raw = self.transport.execute_streamed_rpc([None, json.dumps(inner, separators=(",", ":"))])
        answer = parse_streamed_response(raw)
        if not answer:
            raise StreamedParseEmpty(f"Query returned no text for notebook {workspace_id}")
        logger.info("Query successful.")
        return answer

    def query(self, source_ref: str, question: str, strict: bool = False) -> str:
        """Prepare ``source_ref`` and ask ``question`` about it.

        An empty answer comes back as the degraded text "Failed to generate
        answer." unless ``strict`` is set, in which case StreamedParseEmpty is raised.
        """
        prepared = self.prepare_source(source_ref)

        self.state = WorkflowState.WAITING_FOR_INGESTION
        logger.info(f"Waiting {self.query_delay}s before querying...")
        self._sleep(self.query_delay)
        return self._answer(prepared, question, strict)

    def generate_summary(self, source_ref: str, on_progress: ProgressSink | None = None, strict: bool = False) -> str:
        """Summarize ``source_ref``; waits longer than a plain query for analysis to finish."""
        prepared = self.prepare_source(source_ref, on_progress)

        self.state = WorkflowState.WAITING_FOR_INGESTION
        logger.info(f"Waiting {self.summary_delay}s before requesting summary...")
        self._report(on_progress, "Waiting for analysis...")
        self._sleep(self.summary_delay)
        return self._answer(prepared, constants.SUMMARY_PROMPT, strict)

    def _answer(self, prepared: PreparedSource, question: str, strict: bool) -> str:
        try:
            answer = self.query_workspace(prepared.workspace_id, prepared.source_id, question)
        except StreamedParseEmpty:
            self.state = WorkflowState.DONE
            if strict:
                raise
            logger.warning("Query returned empty text.")
            return constants.DEGRADED_ANSWER
        self.state = WorkflowState.DONE
        return answer

    # =========================================================================
    # Cleanup
    # =========================================================================

    def delete_remote(self, workspace_id: str) -> None:
        """Delete a notebook on the server.

        The cache is keyed by source reference, so cleaning it up is the caller's job.
        """
        logger.info(f"Deleting notebook: {workspace_id}...")
        self.transport.execute_rpc(constants.RPC_DELETE_NOTEBOOK, [workspace_id])
        logger.info(f"Notebook deleted: {workspace_id}")
