import logging
import secrets
import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future, TimeoutError as FutureTimeout
from decimal import Decimal
from typing import Callable, Optional

from .errors import GatewayError, GatewayTimeoutError

log = logging.getLogger(__name__)


class Gateway(ABC):
    """Bank / payment gateway boundary.

    Implementations move money and return the gateway's own refund id. They
    report failures by raising ``GatewayError`` with the gateway's code and
    message.
    """

    @abstractmethod
    def refund(self, transaction_id: str, amount: Decimal) -> str:
        ...


class SandboxGateway(Gateway):
    """Accepts every refund and hands out ``rfnd_`` ids. Used for local runs."""

    def __init__(self):
        self.refunds: list[tuple[str, Decimal, str]] = []

    def refund(self, transaction_id: str, amount: Decimal) -> str:
        refund_id = f"rfnd_{secrets.token_hex(7)}"
        self.refunds.append((transaction_id, amount, refund_id))
        return refund_id


class GatewayClient:
    """Runs gateway calls with a deadline and never retries them.

    Each call runs on its own daemon thread, so a gateway that never answers
    cannot keep the process alive. A call that misses the deadline keeps
    running; its eventual answer goes to ``on_late_result`` as
    ``(refund_id, None)`` or ``(None, error)``.
    """

    def __init__(self, gateway: Gateway, timeout_seconds: float = 30.0):
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds

    def refund(
        self,
        transaction_id: str,
        amount: Decimal,
        on_late_result: Optional[Callable[[Optional[str], Optional[BaseException]], None]] = None,
    ) -> str:
        future = self._submit(self.gateway.refund, transaction_id, amount)
        try:
            refund_id = future.result(timeout=self.timeout_seconds)
        except FutureTimeout:
            # The call may still land at the gateway; nothing has been persisted here
            log.warning("Gateway refund for %s timed out after %ss; outcome unknown",
                        transaction_id, self.timeout_seconds)
            if on_late_result is not None:
                future.add_done_callback(lambda done: _deliver_late(done, on_late_result))
            raise GatewayTimeoutError(
                f"Gateway did not answer within {self.timeout_seconds}s", gateway_code="timeout"
            )
        except GatewayError as e:
            log.warning("Gateway refused refund for %s: [%s] %s", transaction_id, e.gateway_code, e.message)
            raise
        except Exception as e:
            log.warning("Gateway refund for %s failed: %s", transaction_id, e)
            raise GatewayError(str(e), gateway_code=type(e).__name__)

        if not refund_id:
            raise GatewayError("Gateway returned an empty refund id", gateway_code="empty_response")
        return refund_id

    def _submit(self, fn: Callable, *args) -> Future:
        future: Future = Future()

        def run():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=run, name="gateway-call", daemon=True).start()
        return future


def _deliver_late(future: Future, callback) -> None:
    error = future.exception()
    if error is not None:
        callback(None, error)
    elif not future.result():
        callback(None, GatewayError("Gateway returned an empty refund id", gateway_code="empty_response"))
    else:
        callback(future.result(), None)
