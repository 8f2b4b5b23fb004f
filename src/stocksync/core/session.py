"""Session protocol state machine for the polling accounting client."""

import uuid
from enum import Enum
from typing import Dict, Optional, Tuple

from .responses import ResponseRecorder, is_inventory_query
from ..config.settings import AppSettings
from ..qbxml import render_job
from ..queue import Job, JobQueue
from ..utils.logging import get_logger

NOT_VALID_USER = "nvu"
AUTH_SEED_SOURCE = "session-auth"


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REQUEST_PENDING = "request_pending"
    RESPONSE_PENDING = "response_pending"
    CLOSED = "closed"


class SessionHandler:
    """Answers the five-operation session protocol plus its informational calls.

    Tickets live in memory only; everything that must survive a restart is in
    the job queue and its current-job slot. Negative acknowledgements (bad
    credentials, unknown tickets) are returned as protocol values, never
    raised.
    """

    def __init__(self, settings: AppSettings, queue: JobQueue, recorder: ResponseRecorder):
        self.settings = settings
        self.queue = queue
        self.recorder = recorder
        self._sessions: Dict[str, SessionState] = {}
        self._last_error: str = ""
        self.logger = get_logger(self.__class__.__name__)

    def state(self, ticket: str) -> SessionState:
        return self._sessions.get(ticket, SessionState.UNAUTHENTICATED)

    def _known(self, ticket: str, operation: str) -> bool:
        if ticket in self._sessions:
            return True
        self.logger.warning("Unknown session ticket", operation=operation, ticket=ticket)
        return False

    # Informational

    def server_version(self) -> str:
        return self.settings.session.server_version

    def client_version(self, version: str) -> str:
        """Accept any client version; an empty answer means "proceed"."""
        self.logger.info("Client version reported", client_version=version)
        return ""

    # Core protocol

    async def authenticate(self, username: str, password: str) -> Tuple[str, str]:
        """Validate credentials.

        Returns:
            ``(ticket, company_file)`` on success, ``("", "nvu")`` otherwise
        """
        expected = self.settings.session
        if username != expected.username or password != expected.password:
            self.logger.warning("Authentication rejected", username=username)
            return "", NOT_VALID_USER

        ticket = uuid.uuid4().hex
        self._sessions[ticket] = SessionState.AUTHENTICATED
        self.logger.info("Session authenticated", ticket=ticket)

        if expected.seed_query_on_auth and not await self.queue.has_job(is_inventory_query):
            await self.queue.enqueue(Job.inventory_query(source=AUTH_SEED_SOURCE))
        return ticket, expected.company_file

    async def send_request_xml(self, ticket: str) -> str:
        """Hand the client its next request.

        Jobs that render to nothing are cleared and skipped. An empty queue
        yields ``""`` without touching any durable state.
        """
        if not self._known(ticket, "sendRequestXML"):
            return ""

        previous = await self.queue.current_job()
        if previous is not None:
            self.logger.warning("Replacing unconfirmed current job", job_id=previous.id)

        for _ in range(self.settings.session.max_dispatch_attempts):
            job = await self.queue.promote_next()
            if job is None:
                self._sessions[ticket] = SessionState.REQUEST_PENDING
                return ""

            xml = render_job(job, self.settings.qbxml)
            if xml:
                self.recorder.record_request(xml)
                self._sessions[ticket] = SessionState.RESPONSE_PENDING
                self.logger.info("Request dispatched", job_id=job.id, job_type=job.type.value)
                return xml

            self.logger.warning("Job produced no request, skipping", job_id=job.id, job_type=job.type.value)
            await self.queue.clear_current()

        self.logger.warning(
            "Dispatch attempts exhausted",
            max_dispatch_attempts=self.settings.session.max_dispatch_attempts
        )
        self._sessions[ticket] = SessionState.REQUEST_PENDING
        return ""

    async def receive_response_xml(
        self,
        ticket: str,
        response: str,
        hresult: str = "",
        message: str = ""
    ) -> int:
        """Complete the current job with the client's response.

        Returns:
            100 when the queue is drained, 0 when more work is waiting, -1 when
            the client reported an error or the ticket is unknown
        """
        if not self._known(ticket, "receiveResponseXML"):
            return -1
        if self._sessions[ticket] != SessionState.RESPONSE_PENDING:
            self.logger.warning("Response received out of sequence", state=self._sessions[ticket].value)

        job = await self.queue.current_job()
        error = f"{hresult}: {message}".strip(": ") if hresult else None
        try:
            await self.recorder.complete(job, response or "", error=error)
        finally:
            await self.queue.clear_current()
            self._sessions[ticket] = SessionState.REQUEST_PENDING

        if error:
            self._last_error = error
            return -1

        remaining = await self.queue.size()
        return 100 if remaining == 0 else 0

    def get_last_error(self, ticket: str) -> str:
        if not self._known(ticket, "getLastError"):
            return ""
        return self._last_error

    def connection_error(self, ticket: str, hresult: str, message: str) -> str:
        """Record a client-side connection failure; ``"done"`` ends the session."""
        self._last_error = f"{hresult}: {message}"
        self.logger.error("Client connection error", ticket=ticket, hresult=hresult, message=message)
        return "done"

    def close_connection(self, ticket: str) -> str:
        if self._sessions.pop(ticket, None) is not None:
            self.logger.info("Session closed", ticket=ticket)
        return "OK"
