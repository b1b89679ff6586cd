"""
Executor adapters - the opaque collaborator that performs the irreversible effect.

The governor calls an executor at most once per successful execute. Any
failure, including a timeout, surfaces as ExecutorError so the governor can
leave the action QUEUED for a retry.
"""

import concurrent.futures
import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any, Dict

import requests

from .errors import ExecutorError
from .schema import ExecutionReceipt, QueuedAction


class IExecutor(ABC):
    """Performs the effect of a queued action."""

    @abstractmethod
    def execute(self, action: QueuedAction) -> ExecutionReceipt:
        """Perform the action. Raise ExecutorError on failure."""
        pass


class SimulatedExecutor(IExecutor):
    """Deterministic offline executor: same action, same tx hash."""

    def execute(self, action: QueuedAction) -> ExecutionReceipt:
        material = json.dumps({
            "id": action.id,
            "kind": action.kind.value,
            "payload": action.payload,
        }, sort_keys=True, default=str)
        tx_hash = "0x" + hashlib.sha256(material.encode()).hexdigest()
        return ExecutionReceipt(
            tx_hash=tx_hash,
            receipt=f"simulated:{action.kind.value.lower()}:{action.id}",
            details={"mode": "simulated"},
        )


class HttpExecutor(IExecutor):
    """Relays the action to an external signer/relayer over HTTP."""

    def __init__(self, url: str, timeout_sec: float = 30.0, session: requests.Session = None):
        if not url:
            raise ValueError("HttpExecutor requires a URL")
        self.url = url
        self.timeout_sec = timeout_sec
        self.session = session or requests.Session()

    def _request_body(self, action: QueuedAction) -> Dict[str, Any]:
        return {
            "actionId": action.id,
            "kind": action.kind.value,
            "payload": action.payload,
            "costUsd": action.cost_usd,
        }

    def execute(self, action: QueuedAction) -> ExecutionReceipt:
        try:
            resp = self.session.post(self.url, json=self._request_body(action), timeout=self.timeout_sec)
        except requests.exceptions.Timeout:
            raise ExecutorError(f"Relay timed out after {self.timeout_sec}s", action.id)
        except requests.exceptions.RequestException as e:
            raise ExecutorError(f"Relay request failed: {e}", action.id)

        if not resp.ok:
            raise ExecutorError(f"Relay returned {resp.status_code}: {resp.text[:100]}", action.id)

        try:
            data = resp.json()
        except ValueError:
            raise ExecutorError("Relay returned a non-JSON body", action.id)

        tx_hash = data.get("txHash") if isinstance(data, dict) else None
        if not tx_hash:
            raise ExecutorError("Relay response has no txHash", action.id)

        return ExecutionReceipt(
            tx_hash=str(tx_hash),
            receipt=str(data.get("receipt") or tx_hash),
            details={k: v for k, v in data.items() if k not in ("txHash", "receipt")},
        )


def call_with_timeout(executor: IExecutor, action: QueuedAction, timeout_sec: float) -> ExecutionReceipt:
    """
    Run ``executor.execute`` in a worker thread and wait at most ``timeout_sec``.

    A timed-out call is abandoned, not cancelled; the worker thread finishes
    on its own. Every failure is reported as ExecutorError.
    """
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    try:
        future = pool.submit(executor.execute, action)
        return future.result(timeout=timeout_sec)
    except concurrent.futures.TimeoutError:
        raise ExecutorError(f"Executor timed out after {timeout_sec}s", action.id)
    except ExecutorError:
        raise
    except Exception as e:
        raise ExecutorError(f"{type(e).__name__}: {e}", action.id) from e
    finally:
        pool.shutdown(wait=False)
