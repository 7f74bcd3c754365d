"""Join-all fan-out over a thread pool with per-branch outcomes."""
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor

Outcome = namedtuple("Outcome", ["item", "value", "error"])


def join_all(fn, items, max_workers=None, thread_name_prefix=""):
    """Run fn(item) for every item concurrently and wait for all of them.

    Returns one Outcome per item, in input order. An exception in one
    branch is recorded in its Outcome and never cancels the others.
    """
    items = list(items)
    if not items:
        return []
    workers = max(1, min(len(items), max_workers or len(items)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=thread_name_prefix) as executor:
        futures = [executor.submit(fn, item) for item in items]
        outcomes = []
        for item, future in zip(items, futures):
            try:
                outcomes.append(Outcome(item, future.result(), None))
            except Exception as e:
                outcomes.append(Outcome(item, None, e))
    return outcomes
