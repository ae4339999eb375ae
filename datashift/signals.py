from collections.abc import Callable, Generator
from contextlib import contextmanager
import logging
import signal
import threading


logger = logging.getLogger(__name__)

STATUS_SIGNAL_NAMES = ("SIGUSR1", "SIGINFO")

SignalToken = dict[signal.Signals, object]


def status_signals() -> list[signal.Signals]:
    return [getattr(signal, name) for name in STATUS_SIGNAL_NAMES if hasattr(signal, name)]


def install_status_handlers(callback: Callable[[str], None]) -> SignalToken:
    """Route status signals to ``callback``; returns the previous handlers to restore later."""
    token: SignalToken = {}
    if threading.current_thread() is not threading.main_thread():
        logger.debug("status signals not installed outside the main thread")
        return token

    def _handler(signum, _frame) -> None:
        callback(signal.Signals(signum).name)

    for sig in status_signals():
        token[sig] = signal.getsignal(sig)
        signal.signal(sig, _handler)
    return token


def restore_status_handlers(token: SignalToken) -> None:
    for sig, previous in token.items():
        signal.signal(sig, previous if previous is not None else signal.SIG_DFL)


@contextmanager
def status_signal_handlers(callback: Callable[[str], None]) -> Generator[SignalToken, None, None]:
    token = install_status_handlers(callback)
    try:
        yield token
    finally:
        restore_status_handlers(token)
