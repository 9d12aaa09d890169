import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

# Stamped by the controllers; see DeployLogAdapter.
DEPLOY_FIELDS = ("deploy_state", "target_slot", "mode", "exit_code")


class DeployJSONFormatter(logging.Formatter):
    """One JSON object per line, tagged with where the deploy was when it logged."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key in DEPLOY_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class DeployLogAdapter(logging.LoggerAdapter):
    """Adds the controller's current state to every record; ``extra`` is updated in place."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def setup_logger(name: str = "bluegreen", log_file: str | Path | None = None) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)

    if logger.handlers:
        return logger

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(logging.INFO)
    stdout_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
    )
    logger.addHandler(stdout_handler)

    # File handler (structured JSON log)
    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(DeployJSONFormatter())
        logger.addHandler(file_handler)

    return logger
