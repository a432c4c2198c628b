"""
Settle wait between provisioning and installation.

A capped poll-until-ready with exponential backoff. When the cap is reached
the wait gives up quietly and hands back the best-known address, so the
installer still runs.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from typing import Callable

from tenacity import RetryCallState, Retrying, retry_if_result, stop_after_delay, wait_exponential

from common.errors import DeployError, VerificationWarning

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AddressResult:
    address: str | None
    confirmed: bool
    attempts: int = 0
    warning: VerificationWarning | None = None


def probe_tcp(address: str, port: int = 22, timeout: float = 3.0) -> bool:
    """True when a TCP connection to address:port succeeds."""
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_for_address(
    candidates: Callable[[], list[str]],
    probe: Callable[[str], bool],
    timeout: float,
    initial_delay: float = 2.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], None] = time.sleep,
) -> AddressResult:
    """Poll ``candidates`` until one of them passes ``probe`` or ``timeout`` expires."""
    best_known: list[str] = []
    slept = [0.0]

    def attempt() -> str | None:
        try:
            found = [c for c in candidates() if c]
        except DeployError as e:
            logger.info(f"Address discovery failed, will retry: {e}")
            return None
        if found and not best_known:
            best_known.append(found[0])
        for address in found:
            if probe(address):
                return address
        return None

    def before_sleep(state: RetryCallState) -> None:
        logger.info(f"Waiting for VM to be ready (attempt {state.attempt_number}, next check in {state.next_action.sleep:.1f}s)")

    def pause(seconds: float) -> None:
        slept[0] += seconds
        sleep(seconds)

    # wall clock or accumulated sleep, whichever runs out first
    retryer = Retrying(
        stop=stop_after_delay(timeout) | (lambda state: slept[0] >= timeout),
        wait=wait_exponential(multiplier=initial_delay, max=max_delay),
        retry=retry_if_result(lambda address: address is None),
        retry_error_callback=lambda state: None,
        before_sleep=before_sleep,
        sleep=pause,
    )
    address = retryer(attempt)
    attempts = retryer.statistics.get("attempt_number", 0)
    if address is not None:
        logger.info(f"VM reachable at {address}")
        return AddressResult(address, True, attempts)

    fallback = best_known[0] if best_known else None
    if fallback:
        warning = VerificationWarning(
            f"No address confirmed reachable within {timeout:.0f}s, proceeding with best-known address {fallback}",
            log=True,
        )
    else:
        warning = VerificationWarning(
            f"No network address discovered within {timeout:.0f}s, proceeding without one", log=True
        )
    return AddressResult(fallback, False, attempts, warning)


__all__ = ["AddressResult", "probe_tcp", "wait_for_address"]
