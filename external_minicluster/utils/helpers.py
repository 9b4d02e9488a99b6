import contextlib
import datetime
import secrets
import signal
import threading
import typing as tp


@contextlib.contextmanager
def ignore_interrupt() -> tp.Iterator[None]:
    """Ignore SIGINT while the block runs, so Ctrl+C doesn't leave daemons behind.

    Signal handlers can be changed only from the main thread, elsewhere this does nothing.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    orig_handler = signal.signal(signal.SIGINT, signal.SIG_IGN)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, orig_handler)


def get_timestamped_name(suffix_bytes: int = 2) -> str:
    """Return unique name that sorts by creation time.

    >>> len(get_timestamped_name()) == len("200801_002401314_c0ff")
    True
    """
    timestamp = datetime.datetime.now(tz=datetime.UTC).strftime("%y%m%d_%H%M%S%f")[:-3]
    return f"{timestamp}_{secrets.token_hex(suffix_bytes)}"
