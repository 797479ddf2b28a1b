"""
http_fetcher.py - Resilient JSON fetcher

GET with a fixed per-attempt timeout and linear backoff between attempts.
Exhausted retries return None; callers treat that as "source unavailable
this run" and fall back or skip.
"""

import time
from typing import Any, Dict, Optional

import requests

from settings import HEADERS


class ResilientFetcher:
    """Fetcher shared by every collection task of a run."""

    def __init__(self, timeout: int = 30, max_retries: int = 3, backoff_sec: float = 2.0,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_sec = backoff_sec
        self.session = session or requests.Session()
        self.session.headers.update(HEADERS)

    def fetch(self, url: str, params: Optional[Dict[str, Any]] = None,
              max_retries: Optional[int] = None) -> Optional[Any]:
        """
        Fetch and parse a JSON document.

        Args:
            url: Absolute endpoint URL
            params: Optional query parameters
            max_retries: Attempt budget for this call (defaults to the fetcher's)

        Returns:
            Parsed JSON payload, or None once every attempt failed
        """
        attempts = max_retries if max_retries is not None else self.max_retries
        for attempt in range(attempts):
            try:
                resp = self.session.get(url, params=params, timeout=self.timeout)
                resp.raise_for_status()
                return resp.json()
            except requests.exceptions.Timeout:
                print(f"    [HTTP] Timeout for {url}, attempt {attempt+1}/{attempts}")
            except requests.RequestException as e:
                print(f"    [HTTP] {e} (attempt {attempt+1}/{attempts})")
            except ValueError as e:
                # Body was not JSON
                print(f"    [HTTP] Malformed JSON from {url}: {e} (attempt {attempt+1}/{attempts})")

            if attempt < attempts - 1:
                time.sleep(self.backoff_delay(attempt))

        print(f"    [HTTP] Giving up on {url} after {attempts} attempts")
        return None

    def backoff_delay(self, attempt: int) -> float:
        """Delay after a failed attempt (0-based); grows linearly."""
        return self.backoff_sec * (attempt + 1)
