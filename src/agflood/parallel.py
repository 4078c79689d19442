# src/agflood/parallel.py
import concurrent.futures
import logging
import time
from tqdm import tqdm

logger = logging.getLogger(__name__)


def process_in_parallel(items, process_func, max_workers=None, desc="Processing"):
    """
    Process a list of items in parallel.

    Args:
        items: List of items to process
        process_func: Picklable function to apply to each item
        max_workers: Maximum number of worker processes (None uses all available,
            1 runs in the calling process)
        desc: Description for the progress bar

    Returns:
        List of results in the same order as items
    """
    items = list(items)
    start_time = time.time()

    if max_workers == 1 or len(items) <= 1:
        results = [process_func(item) for item in tqdm(items, desc=desc)]
    else:
        results = [None] * len(items)
        with concurrent.futures.ProcessPoolExecutor(max_workers=max_workers) as executor:
            futures = {executor.submit(process_func, item): i for i, item in enumerate(items)}

            for future in tqdm(concurrent.futures.as_completed(futures), total=len(futures), desc=desc):
                results[futures[future]] = future.result()

    end_time = time.time()
    logger.info(f"{desc} completed in {end_time - start_time:.2f} seconds")

    return results
