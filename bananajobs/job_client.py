import logging
from typing import Any, Dict, Optional

import httpx

from config.settings import settings

from .adapters import JobAdapter
from .errors import PollingTransportError, SubmissionError
from .model import GenerateRequest, Job
from .poller import StatusReport

logger = logging.getLogger(__name__)


class JobClient:
    """
    HTTP side of a generation job: one POST to submit, one GET per status check.
    Owns an httpx.AsyncClient unless one is passed in.
    """

    def __init__(self, http: Optional[httpx.AsyncClient] = None, timeout: float = settings.HTTP_TIMEOUT):
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def __aenter__(self) -> "JobClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def submit(self, adapter: JobAdapter, request: GenerateRequest) -> Job:
        """
        Send the job to the adapter's submit endpoint.
        Returns a Queued Job carrying the id assigned by the remote service.
        """
        try:
            payload = adapter.build_payload(request)
        except (KeyError, TypeError, ValueError) as e:
            raise SubmissionError(f"{adapter.name}: cannot build request: {e}") from e

        try:
            r = await self.http.post(adapter.submit_url, json=payload, headers=adapter.headers())
        except httpx.HTTPError as e:
            raise SubmissionError(f"{adapter.name}: submit request failed: {e}") from e

        if not r.is_success:
            logger.error("%s submit returned %s: %s", adapter.name, r.status_code, r.text[:500])
            raise SubmissionError(
                f"{adapter.name}: submit rejected", status_code=r.status_code, body=r.text
            )

        body = _json_body(r)
        try:
            job_id = adapter.parse_submit(body) if body is not None else None
        except Exception as e:
            raise SubmissionError(
                f"{adapter.name}: unreadable submit response: {e}", status_code=r.status_code, body=r.text
            ) from e
        if not job_id:
            raise SubmissionError(
                f"{adapter.name}: response has no job id", status_code=r.status_code, body=r.text
            )

        logger.info("%s job submitted: %s", adapter.name, job_id)
        return Job(id=str(job_id), adapter=adapter.name, kind=adapter.kind)

    async def check_status(self, adapter: JobAdapter, job_id: str) -> StatusReport:
        url = adapter.status_endpoint(job_id)
        try:
            r = await self.http.get(url, headers=adapter.headers())
        except httpx.HTTPError as e:
            raise PollingTransportError(f"{type(e).__name__}: {e}") from e

        logger.debug("Polling %s, status=%s", url, r.status_code)
        if not r.is_success:
            raise PollingTransportError(f"status endpoint returned HTTP {r.status_code}", r.status_code)

        body = _json_body(r)
        if body is None:
            raise PollingTransportError("status endpoint returned a non-JSON body", r.status_code)
        try:
            return adapter.parse_status(body)
        except Exception as e:
            # counts against the transport-failure budget
            raise PollingTransportError(f"unreadable status response: {e}", r.status_code) from e


def _json_body(r: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        data = r.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None
