import os
import logging
import json

TEXT_FORMAT = '%(asctime)s [%(levelname)s] %(name)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# AWS SDK loggers are chatty at INFO; keep them at WARNING so resize decisions stand out
NOISY_LOGGERS = ('boto3', 'botocore', 's3transfer', 'urllib3')

# LogRecord attributes that are not user-supplied `extra` fields
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}


def _running_in_aws() -> bool:
    return os.environ.get('AWS_EXECUTION_ENV') is not None


def setup_logging(level=None, json_output=None):
    """
    Set up logging for the autoscaler process.

    Plain text output locally; JSON lines when running inside AWS so that pool ids,
    requested counts and similar `extra` fields are queryable in CloudWatch Logs Insights.

    Args:
        level: Optional log level override (default: uses LOG_LEVEL env var or INFO)
        json_output: Force JSON output on or off (default: on when running in AWS)
    """
    level_name = str(level or os.environ.get('LOG_LEVEL', 'INFO')).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    # The Lambda runtime installs its own handler, in which case basicConfig does nothing
    logging.basicConfig(level=numeric_level, format=TEXT_FORMAT, datefmt=DATE_FORMAT)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    if json_output is None:
        json_output = _running_in_aws()
    if json_output:
        for handler in root_logger.handlers:
            handler.setFormatter(JsonFormatter(datefmt=DATE_FORMAT))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.debug(f"Logging initialized at {level_name}")


class JsonFormatter(logging.Formatter):
    """
    Format log records as single-line JSON documents.

    Fields passed through `extra` (e.g. pool_id, requested, started) become top-level keys.
    """

    def format(self, record):
        document = {
            'timestamp': self.formatTime(record, self.datefmt),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.pathname}:{record.lineno}",
            'function': record.funcName
        }

        if record.exc_info:
            document['exception'] = self.formatException(record.exc_info)

        document.update({key: value for key, value in vars(record).items()
                         if key not in _RESERVED_ATTRS and key not in document})

        return json.dumps(document, default=str)
