import logging
import os


def _rotating_handler(path: str, fmt: str, level: int = logging.NOTSET) -> logging.Handler:
    import datetime as _dt
    from logging.handlers import TimedRotatingFileHandler

    handler = TimedRotatingFileHandler(
        path,
        when="midnight",
        interval=1,
        backupCount=1,
        utc=True,
        atTime=_dt.time(3, 0),
        encoding="utf-8",
    )

    def _namer(_default_name: str) -> str:
        return f"{path}.1"

    def _rotator(source: str, dest: str) -> None:
        try:
            if os.path.exists(dest):
                os.remove(dest)
        except OSError:
            pass
        os.replace(source, dest)

    handler.namer = _namer
    handler.rotator = _rotator
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    return handler


def setup_logging(log_path: str) -> None:
    """
    Configure rotating log files:
    - main log_path (INFO+)
    - <base>_error.log (ERROR+)
    - <base>_supervisor.log (supervisor.* loggers only: connects, closes, heartbeats, backoff)
    """
    import sys
    import threading

    log_dir = os.path.dirname(log_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    base_root, base_ext = os.path.splitext(os.path.basename(log_path))
    if base_root:
        error_log_name = f"{base_root}_error{base_ext or '.log'}"
        supervisor_log_name = f"{base_root}_supervisor{base_ext or '.log'}"
    else:
        error_log_name = "gateway_error.log"
        supervisor_log_name = "supervisor.log"

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(logging.INFO)

    root.addHandler(_rotating_handler(log_path, "%(asctime)s %(levelname)s %(message)s"))
    error_handler = _rotating_handler(
        os.path.join(log_dir, error_log_name),
        "%(asctime)s %(levelname)s %(message)s",
        level=logging.ERROR,
    )
    root.addHandler(error_handler)

    # Lifecycle noise (heartbeats every 20s per session) goes to its own file.
    supervisor_logger = logging.getLogger("supervisor")
    for h in list(supervisor_logger.handlers):
        supervisor_logger.removeHandler(h)
    supervisor_logger.addHandler(
        _rotating_handler(
            os.path.join(log_dir, supervisor_log_name),
            "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        )
    )
    supervisor_logger.addHandler(error_handler)
    supervisor_logger.propagate = False

    prev_excepthook = sys.excepthook
    prev_threading_excepthook = threading.excepthook

    def _log_unhandled_exception(exc_type, exc_value, exc_traceback):
        logging.getLogger().error("Unhandled exception", exc_info=(exc_type, exc_value, exc_traceback))
        if prev_excepthook and prev_excepthook is not sys.__excepthook__:
            prev_excepthook(exc_type, exc_value, exc_traceback)

    def _log_thread_exception(args):
        logging.getLogger().error(
            "Unhandled thread exception",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        if prev_threading_excepthook and prev_threading_excepthook is not threading.__excepthook__:
            prev_threading_excepthook(args)

    sys.excepthook = _log_unhandled_exception
    threading.excepthook = _log_thread_exception
