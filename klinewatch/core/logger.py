import logging
import json
import sys
from datetime import datetime
from klinewatch.config import settings

# Attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and key not in log_record:
                log_record[key] = value
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)

def setup_logger(name: str = "klinewatch", level: str = "INFO"):
    logger = logging.getLogger(name)
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    # Remove existing handlers to avoid duplicates
    logger.handlers = []
    logger.addHandler(handler)

    return logger

logger = setup_logger(level=settings.LOG_LEVEL)
