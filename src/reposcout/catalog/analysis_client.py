"""
Analysis Client - HTTP bridge to the external repository analysis service.

The service is slow, rate limited and occasionally hangs. This client does
not retry or time-box anything itself; the scheduler and the batch
orchestrator own timeouts and retries. Its only job is to turn every
failure into an exception that classify_error() can map.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
import structlog

from ..errors import AnalysisError


# Any coroutine function taking an item id and returning a result
Analyzer = Callable[[str], Awaitable[Any]]


class AnalysisClient:
    """
    Async client for POST {base_url}/analyze.

    Instances are callable, so they can be handed directly to the
    orchestrator or scheduler as their analyzer.

    Example:
        >>> async with AnalysisClient("https://analysis.internal") as analyze:
        ...     result = await analyze("owner/name")
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Initialize the analysis client.

        Args:
            base_url: Service root URL
            api_key: Sent as a bearer token when set
            session: Existing session to reuse (not closed by this client)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._session = session
        self._owns_session = session is None

        self.logger = structlog.get_logger(__name__)

    async def initialize(self):
        if self._session is None:
            headers = {"User-Agent": "reposcout/1.0"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            # No client-side total timeout: callers race the call against their own
            self._session = aiohttp.ClientSession(headers=headers)
            self._owns_session = True

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "AnalysisClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def analyze(self, item_id: str) -> Dict[str, Any]:
        """
        Request an analysis of one repository.

        Returns:
            The service's JSON result

        Raises:
            AnalysisError: Carrying the HTTP status when the service rejected the call,
                or a descriptive message for transport and payload failures
        """
        if self._session is None:
            await self.initialize()

        url = f"{self.base_url}/analyze"
        try:
            async with self._session.post(url, json={"item_id": item_id}) as response:
                if response.status >= 400:
                    body = await response.text()
                    self.logger.warning(
                        "analysis_request_failed",
                        item_id=item_id,
                        status=response.status,
                        body=body[:200],
                    )
                    raise AnalysisError(
                        f"Analysis service error {response.status}: {body[:200]}",
                        status=response.status,
                    )
                payload = await response.json()
        except aiohttp.ClientConnectionError as e:
            raise AnalysisError(f"Analysis service network error: {e}") from e
        except aiohttp.ContentTypeError as e:
            raise AnalysisError(f"Analysis service returned non-JSON body: {e}") from e

        if isinstance(payload, dict) and payload.get("error") and "result" not in payload:
            # Service-level refusal, e.g. "no analyzable content"
            raise AnalysisError(str(payload["error"]))

        return payload

    async def __call__(self, item_id: str) -> Dict[str, Any]:
        return await self.analyze(item_id)
