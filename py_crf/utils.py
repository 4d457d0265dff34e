import logging
import sys
import time


def create_logger(tag: str, verbose: bool = True):
    default_fields = logging.getLogRecordFactory()
    t0 = time.perf_counter()

    # https://stackoverflow.com/questions/63056270/python-logging-time-since-start-in-seconds
    def record_factory(*args, **kwargs):
        record = default_fields(*args, **kwargs)
        record.uptime = time.perf_counter() - t0
        return record

    logging.setLogRecordFactory(record_factory)
    logger = logging.getLogger(tag)
    logger.setLevel(logging.DEBUG)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        formatter = logging.Formatter(f"[%(uptime)6.1fs][{tag}] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def log_examples(logger, items_with_scores: list[tuple[str, float]], score_label="score", n=5):
    """Log the n lowest and n highest scoring items as a tree branch."""
    items_with_scores.sort(key=lambda x: x[1])
    for i, (item, score) in enumerate(items_with_scores):
        if len(items_with_scores) > 2 * n:
            if i == n:
                logger.debug("   │  ├─ ...")
            if n < i < len(items_with_scores) - n:
                continue
        list_item = " ├─" if i < len(items_with_scores) - 1 else " └─"
        logger.debug(f"   │ {list_item} {str(item):25}  {score_label} = {score:10.3g}")
