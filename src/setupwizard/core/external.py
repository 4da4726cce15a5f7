"""Blocking calls to remote collaborators from step execute hooks.

Every call carries an explicit timeout. Network problems surface as
``ExternalCallError`` so the lifecycle maps them to a step failure.
"""

from __future__ import annotations

from typing import Any

import requests

from setupwizard.core.errors import ExternalCallError
from setupwizard.core.logging import get_logger

_LOGGER = get_logger(__name__)


def call_endpoint(
    url: str,
    payload: dict[str, Any],
    *,
    timeout: float,
    session: requests.Session | None = None,
) -> dict[str, Any]:
    """POST ``payload`` as JSON and return the decoded JSON object.

    Raises:
        ExternalCallError: On timeout, connection failure, non-2xx status or a
            body that is not a JSON object
    """
    if timeout <= 0:
        raise ValueError("timeout must be positive")

    http = session or requests
    _LOGGER.verbose(f"calling {url} (timeout={timeout}s)")
    try:
        resp = http.post(url, json=payload, timeout=timeout)
        resp.raise_for_status()
        body = resp.json()
    except requests.Timeout as e:
        raise ExternalCallError(
            f"Request to {url} timed out after {timeout}s", "Check connectivity and retry"
        ) from e
    except requests.ConnectionError as e:
        raise ExternalCallError(f"Cannot reach {url}: {e}", "Check connectivity and retry") from e
    except requests.HTTPError as e:
        raise ExternalCallError(f"{url} answered with an error: {e}") from e
    except (requests.RequestException, ValueError) as e:
        raise ExternalCallError(f"Invalid response from {url}: {e}") from e

    if not isinstance(body, dict):
        raise ExternalCallError(f"Invalid response from {url}: expected a JSON object")
    return body
