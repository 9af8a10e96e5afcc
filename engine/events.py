import json
import logging


def safe_json_dumps(payload, **kwargs):
    return json.dumps(payload, default=str, ensure_ascii=False, **kwargs)


def log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logging.log(level, safe_json_dumps(payload, sort_keys=True))
    except Exception as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")
