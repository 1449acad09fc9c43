import logging, json, sys, time, os


class _JsonLineFormatter(logging.Formatter):
    """One JSON object per line: ts, level, name, msg (+ exc when present)."""

    converter = time.gmtime  # UTC timestamps

    def format(self, record):
        line = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


def get_logger(name="airc", level=logging.INFO, to_file=None):
    """
    Structured logger shared by every AIRC component.

    Component loggers are named "AIRC.<Component>". AIRC_LOG_LEVEL overrides
    the level and AIRC_LOG_FILE (or `to_file`) adds a file sink. Handlers are
    attached once per name, so repeated calls are cheap.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(os.getenv("AIRC_LOG_LEVEL", "").upper() or level)
    formatter = _JsonLineFormatter()

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    to_file = to_file or os.getenv("AIRC_LOG_FILE")
    if to_file:
        os.makedirs(os.path.dirname(to_file) or ".", exist_ok=True)
        file_handler = logging.FileHandler(to_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
