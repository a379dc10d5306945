"""HTTP client with bounded retries and backoff."""
import time
import logging
import requests

logger = logging.getLogger("opsmonitor.http")


class APIError(Exception):
    """API request error with status code and response body."""
    def __init__(self, message, status_code=None, response_body=None, source=None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.source = source


class HTTPClient:
    """Thin ``requests.Session`` wrapper used by metric sources and transports.

    Retries on 429/5xx and connection errors with exponential backoff capped
    at ``max_backoff``; 4xx responses fail immediately.
    """

    RETRYABLE_STATUS = {429, 500, 502, 503, 504}
    NON_RETRYABLE_STATUS = {400, 401, 403, 404, 422}

    def __init__(self, base_url="", timeout=10, max_retries=2, max_backoff=30,
                 headers=None, sleep=time.sleep):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_backoff = max_backoff
        self._sleep = sleep
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "OpsMonitor/1.0"})
        if headers:
            self.session.headers.update(headers)

    def get(self, path="", params=None):
        return self._request("GET", path, params=params)

    def post(self, path="", json=None, data=None, headers=None):
        return self._request("POST", path, json=json, data=data, headers=headers)

    def _url(self, path):
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if not path:
            return self.base_url
        return f"{self.base_url}/{path.lstrip('/')}"

    def _backoff(self, attempt):
        return min(2 ** attempt, self.max_backoff)

    def _request(self, method, path, params=None, json=None, data=None, headers=None):
        url = self._url(path)
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                start = time.monotonic()
                resp = self.session.request(method, url, params=params, json=json, data=data,
                                            headers=headers, timeout=self.timeout)
                latency = int((time.monotonic() - start) * 1000)
                logger.debug(f"{method} {url} → {resp.status_code} ({latency}ms)")

                if 200 <= resp.status_code < 300:
                    try:
                        return resp.json()
                    except ValueError:
                        return resp.text

                if resp.status_code in self.RETRYABLE_STATUS:
                    retry_after = resp.headers.get("Retry-After")
                    wait = float(retry_after) if retry_after else self._backoff(attempt)
                    last_error = APIError(f"HTTP {resp.status_code} from {url}",
                                          status_code=resp.status_code, response_body=resp.text)
                    if attempt < self.max_retries:
                        logger.warning(f"Retryable {resp.status_code} from {url}, waiting {wait:.1f}s (attempt {attempt + 1})")
                        self._sleep(min(wait, self.max_backoff))
                    continue

                raise APIError(
                    f"HTTP {resp.status_code} from {url}",
                    status_code=resp.status_code,
                    response_body=resp.text,
                )

            except requests.exceptions.RequestException as e:
                logger.warning(f"Request error for {url}: {e} (attempt {attempt + 1})")
                last_error = APIError(str(e), source=url)
                if attempt < self.max_retries:
                    self._sleep(self._backoff(attempt))

        raise last_error or APIError(f"Max retries exceeded for {url}")
