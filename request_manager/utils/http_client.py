"""HTTP client with retries, timeouts, and circuit breaker."""
import httpx
from typing import Optional, Dict, Any
from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    RetryCallState
)
import structlog
import time

logger = structlog.get_logger(__name__)


class CircuitOpenError(httpx.HTTPError):
    """Raised without calling the service while its circuit is open."""


class CircuitBreaker:
    """Per-service breaker: opens after consecutive failures, probes again after ``timeout`` seconds."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, service_name: str, failure_threshold: int = 5, timeout: int = 60):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.state = self.CLOSED

    def call_succeeded(self):
        if self.state != self.CLOSED:
            logger.info("circuit_breaker_closed", service=self.service_name)
        self.failure_count = 0
        self.opened_at = None
        self.state = self.CLOSED

    def call_failed(self):
        self.failure_count += 1
        # A failed probe reopens immediately
        if self.state == self.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = self.OPEN
            self.opened_at = time.monotonic()
            logger.warning(
                "circuit_breaker_opened",
                service=self.service_name,
                failure_count=self.failure_count,
                threshold=self.failure_threshold,
            )

    def can_attempt(self) -> bool:
        if self.state != self.OPEN:
            return True
        if self.opened_at is not None and time.monotonic() - self.opened_at >= self.timeout:
            self.state = self.HALF_OPEN
            logger.info("circuit_breaker_half_open", service=self.service_name)
            return True
        return False


def _is_retryable(exc: BaseException) -> bool:
    """Transport errors and 5xx answers are retried, 4xx are not."""
    if isinstance(exc, CircuitOpenError):
        return False
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class RobustHTTPClient:
    """HTTP client with retries, timeouts, and circuit breaker.

    Only GET is retried. POST/PUT submissions are not idempotent on the
    acquisition backends, so they go out exactly once.
    """

    def __init__(
        self,
        default_timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff_base: float = 2.0,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_timeout: int = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.default_timeout = default_timeout
        self.max_retries = max_retries
        self.retry_backoff_base = retry_backoff_base
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.circuit_breaker_threshold = circuit_breaker_threshold
        self.circuit_breaker_timeout = circuit_breaker_timeout
        self.transport = transport

    def _get_circuit_breaker(self, service_name: str) -> CircuitBreaker:
        """Get or create circuit breaker for a service."""
        if service_name not in self.circuit_breakers:
            self.circuit_breakers[service_name] = CircuitBreaker(
                service_name,
                failure_threshold=self.circuit_breaker_threshold,
                timeout=self.circuit_breaker_timeout
            )
        return self.circuit_breakers[service_name]

    def _log_retry(self, retry_state: RetryCallState):
        """Log retry attempts."""
        logger.warning(
            "http_retry_attempt",
            attempt=retry_state.attempt_number,
            max_attempts=self.max_retries + 1,
            exception=str(retry_state.outcome.exception())
        )

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self.transport)

    async def _send(
        self,
        method: str,
        url: str,
        service_name: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        timeout: Optional[float] = None
    ) -> httpx.Response:
        timeout = timeout or self.default_timeout
        cb = self._get_circuit_breaker(service_name)

        if not cb.can_attempt():
            raise CircuitOpenError(f"Circuit breaker open for {service_name}")

        try:
            async with self._client(timeout) as client:
                response = await client.request(method, url, headers=headers, params=params, json=json)
                response.raise_for_status()
                cb.call_succeeded()
                return response
        except httpx.HTTPError as e:
            # 4xx answers mean the service is up
            if _is_retryable(e):
                cb.call_failed()
            else:
                cb.call_succeeded()
            logger.error(
                "http_request_failed",
                service=service_name,
                method=method,
                url=url,
                error=str(e),
                circuit_breaker_state=cb.state
            )
            raise

    async def get_async(
        self,
        url: str,
        service_name: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> httpx.Response:
        """GET request with retries and circuit breaker."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=1, min=1, max=10, exp_base=self.retry_backoff_base),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._send("GET", url, service_name, headers=headers, params=params, timeout=timeout)

    async def post_async(
        self,
        url: str,
        service_name: str,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> httpx.Response:
        """POST request with circuit breaker (no retry)."""
        return await self._send("POST", url, service_name, headers=headers, params=params, json=json, timeout=timeout)

    async def put_async(
        self,
        url: str,
        service_name: str,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> httpx.Response:
        """PUT request with circuit breaker (no retry)."""
        return await self._send("PUT", url, service_name, headers=headers, params=params, json=json, timeout=timeout)


# Global instance
_http_client: Optional[RobustHTTPClient] = None


def get_http_client() -> RobustHTTPClient:
    """Get global HTTP client instance."""
    global _http_client
    if _http_client is None:
        _http_client = RobustHTTPClient(
            default_timeout=30.0,
            max_retries=3,
            circuit_breaker_threshold=5,
            circuit_breaker_timeout=60
        )
    return _http_client
