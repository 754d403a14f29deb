import datetime as _dt
import signal

from lockvault.utils.errors import OperationCancelled


def utc_now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def rel_time_iso(ts: float | None) -> str:
    if ts is None:
        return utc_now_iso()
    return _dt.datetime.fromtimestamp(ts, _dt.timezone.utc).isoformat()


def iso_to_timestamp(value: str) -> float | None:
    """Inverse of `rel_time_iso`; None when the value does not parse."""
    try:
        parsed = _dt.datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_dt.timezone.utc)
    return parsed.timestamp()


def format_size(num: int) -> str:
    kb = 1024
    mb = kb * 1024
    gb = mb * 1024
    if num >= gb:
        return f"{num / gb:.2f} GB"
    if num >= mb:
        return f"{num / mb:.2f} MB"
    if num >= kb:
        return f"{num / kb:.2f} KB"
    return f"{num} bytes"


class CancelToken:
    """Cooperative cancellation flag checked between files in long loops."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason = ""

    def cancel(self, reason: str = "operation cancelled") -> None:
        self._cancelled = True
        self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def check(self) -> None:
        if self._cancelled:
            raise OperationCancelled(self._reason)


def install_signal_handlers(token: CancelToken) -> dict:
    """Route SIGINT/SIGTERM into `token` instead of interrupting mid-write.

    Returns the previous handlers for `restore_signal_handlers`.
    """
    def _handler(signum, _frame):
        if token.cancelled:
            # second signal, e.g. while blocked on a prompt
            raise KeyboardInterrupt
        token.cancel(f"interrupted by {signal.Signals(signum).name}")

    previous = {signal.SIGINT: signal.signal(signal.SIGINT, _handler)}
    if hasattr(signal, "SIGTERM"):
        previous[signal.SIGTERM] = signal.signal(signal.SIGTERM, _handler)
    return previous


def restore_signal_handlers(previous: dict) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)
