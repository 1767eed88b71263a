"""Runs the planned transfers with bounded parallelism.

The `ParallelTransferEngine` drains a queue of `TransferItem`s through a
`TransferStrategy` using a thread pool. A semaphore blocks submission while
`concurrency` copies are in flight, so at most that many rsync/SFTP
operations ever run at once. A failing item is logged and counted; it never
cancels the others. The final `TransferReport` is built only after every
submitted item has finished.
"""
import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Tuple

from .models import TransferItem
from .transfer_strategies import TransferOutcome, TransferStrategy

logger = logging.getLogger(__name__)

ResultCallback = Callable[[TransferItem, TransferOutcome], None]


@dataclasses.dataclass
class TransferReport:
    """Totals for one run of the engine."""
    transferred: int = 0
    skipped_existing: int = 0
    failed: int = 0
    failures: List[Tuple[TransferItem, str]] = dataclasses.field(default_factory=list)

    @property
    def total(self) -> int:
        return self.transferred + self.skipped_existing + self.failed

    @property
    def success(self) -> bool:
        return self.failed == 0

    def record(self, item: TransferItem, outcome: TransferOutcome, error: Optional[str] = None) -> None:
        if outcome is TransferOutcome.TRANSFERRED:
            self.transferred += 1
        elif outcome is TransferOutcome.SKIPPED_EXISTING:
            self.skipped_existing += 1
        else:
            self.failed += 1
            self.failures.append((item, error or "unknown error"))

    @classmethod
    def all_failed(cls, queue: List[TransferItem], reason: str) -> "TransferReport":
        """Builds a report in which every queued item failed for the same reason."""
        report = cls()
        for item in queue:
            report.record(item, TransferOutcome.FAILED, reason)
        return report


class ParallelTransferEngine:
    """Executes transfer items with at most `concurrency` copies in flight.

    Attributes:
        concurrency (int): The worker count. 1 means fully sequential.
    """

    def __init__(self, concurrency: int):
        if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
            raise ValueError(f"concurrency must be a positive integer, got {concurrency!r}")
        self.concurrency = concurrency

    def _transfer_one(self, strategy: TransferStrategy, item: TransferItem,
                      on_result: Optional[ResultCallback]) -> Tuple[TransferOutcome, Optional[str]]:
        error = None
        try:
            outcome = strategy.copy_file(item)
        except Exception as e:
            logger.error(f"Transfer failed: '{item.source_path}' -> '{item.dest_dir}': {e}")
            outcome, error = TransferOutcome.FAILED, str(e)
        else:
            if outcome is TransferOutcome.SKIPPED_EXISTING:
                logger.info(f"Skipping '{item.file_name}' (already exists on remote).")
            else:
                logger.info(f"Transferred '{item.file_name}' -> '{item.dest_dir}'")

        if on_result:
            try:
                on_result(item, outcome)
            except Exception as e:
                logger.debug(f"Progress callback failed for '{item.file_name}': {e}")
        return outcome, error

    def run(self, queue: List[TransferItem], strategy: TransferStrategy,
            on_result: Optional[ResultCallback] = None) -> TransferReport:
        """Transfers every item in `queue` and waits for all of them to finish.

        Args:
            queue: The items to copy. Order of completion is not guaranteed.
            strategy: An opened `TransferStrategy`; shared by all workers.
            on_result: Called from the worker thread as each item finishes.

        Returns:
            The `TransferReport` for the whole queue.
        """
        report = TransferReport()
        if not queue:
            return report

        slots = threading.BoundedSemaphore(self.concurrency)
        logger.info(f"Starting {len(queue)} transfer(s) with {self.concurrency} worker(s).")

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="transfer") as executor:
            futures = {}
            for item in queue:
                slots.acquire()
                future = executor.submit(self._transfer_one, strategy, item, on_result)
                future.add_done_callback(lambda _f: slots.release())
                futures[future] = item

            for future in as_completed(futures):
                outcome, error = future.result()
                report.record(futures[future], outcome, error)

        logger.info(
            f"Transfers finished: {report.transferred} transferred, "
            f"{report.skipped_existing} already present, {report.failed} failed."
        )
        return report
