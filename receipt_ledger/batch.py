"""Sequential batch processing of uploaded receipt images.

Files are sent to the vision model one at a time with a fixed delay
between calls; the model service throttles aggressively. A failure is
recorded on that file's result and the batch moves on. Only rate-limit
responses are retried.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Type, TypeVar

from .config import MissingTaxPolicy, Settings
from .errors import (
    MalformedOutputError,
    RateLimitError,
    RecognitionError,
    classify_error,
)
from .extraction import Recognizer, extract_json
from .models import (
    BatchSummary,
    FileProcessingResult,
    FileStatus,
    OCRBlock,
    ReconciledInvoice,
    UploadedFile,
)
from .normalizer import decode_ocr_blocks, decode_records
from .reconciler import new_line_id, reconcile_records


logger = logging.getLogger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class CancellationToken:
    """Cooperative pause/stop signal for a running batch.

    The batch polls the token between files and between retry attempts.
    """

    def __init__(self):
        self._running = asyncio.Event()
        self._running.set()
        self._stopped = False

    @property
    def paused(self) -> bool:
        return not self._running.is_set() and not self._stopped

    @property
    def stopped(self) -> bool:
        return self._stopped

    def pause(self) -> None:
        if not self._stopped:
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def stop(self) -> None:
        self._stopped = True
        self._running.set()

    async def checkpoint(self) -> bool:
        """Block while paused; return False once stopped"""
        if self._stopped:
            return False
        await self._running.wait()
        return not self._stopped


def backoff_delay(attempt: int, base_delay: float, factor: float) -> float:
    """Delay before retry number ``attempt`` (1-based)"""
    return base_delay * factor ** (attempt - 1)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    factor: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (RateLimitError,),
    token: Optional[CancellationToken] = None,
    sleep: Sleep = asyncio.sleep,
    on_attempt: Optional[Callable[[int], None]] = None
) -> T:
    """Run ``operation`` with exponential backoff on ``retry_on`` errors.

    A ``retry_after`` hint on the error extends the delay. If the token is
    stopped while waiting, the last error is re-raised instead of retrying.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        attempt += 1
        if on_attempt is not None:
            on_attempt(attempt)
        try:
            return await operation()
        except retry_on as e:
            if attempt >= max_attempts:
                raise
            delay = backoff_delay(attempt, base_delay, factor)
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay = max(delay, float(retry_after))
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.1fs",
                attempt, max_attempts, e, delay
            )
            last_error = e

        await sleep(delay)
        if token is not None and not await token.checkpoint():
            raise last_error


def interpret_model_output(
    raw: str,
    *,
    source_file_name: str = "",
    tax_policy: MissingTaxPolicy = MissingTaxPolicy.ZERO,
    id_factory: Callable[[], str] = new_line_id
) -> Tuple[ReconciledInvoice, List[OCRBlock]]:
    """Raw model text to reconciled line items for one file.

    Raises:
        MalformedOutputError: if the text holds no JSON object
    """
    payload = extract_json(raw)
    records = decode_records(payload)
    ocr_blocks = decode_ocr_blocks(payload)
    reconciled = reconcile_records(
        records,
        tax_policy=tax_policy,
        source_file_name=source_file_name,
        ocr_blocks=ocr_blocks,
        id_factory=id_factory
    )
    return reconciled, ocr_blocks


class BatchProcessor:
    """Owns the ordered results of one batch and drives them to completion"""

    def __init__(
        self,
        files: Sequence[UploadedFile],
        recognize: Recognizer,
        settings: Optional[Settings] = None,
        token: Optional[CancellationToken] = None,
        sleep: Sleep = asyncio.sleep,
        id_factory: Callable[[], str] = new_line_id
    ):
        if isinstance(files, (str, bytes)) or not isinstance(files, Sequence):
            raise TypeError("files must be a sequence of UploadedFile")
        for file in files:
            if not isinstance(file, UploadedFile):
                raise TypeError(f"expected UploadedFile, got {type(file).__name__}")
        if not callable(recognize):
            raise TypeError("recognize must be callable")

        self.files = list(files)
        self.recognize = recognize
        self.settings = settings or Settings()
        self.token = token or CancellationToken()
        self._sleep = sleep
        self._id_factory = id_factory
        self.results = [FileProcessingResult(file_name=file.display_name) for file in self.files]

    def summary(self) -> BatchSummary:
        counts = {status: 0 for status in FileStatus}
        for result in self.results:
            counts[result.status] += 1
        return BatchSummary(
            total_files=len(self.results),
            pending=counts[FileStatus.PENDING],
            processing=counts[FileStatus.PROCESSING],
            succeeded=counts[FileStatus.SUCCESS],
            failed=counts[FileStatus.ERROR],
            total_items=sum(len(r.line_items) for r in self.results if r.status == FileStatus.SUCCESS),
        )

    async def run(self) -> List[FileProcessingResult]:
        """Process every pending file in order.

        Safe to call again after a stop: finished files are skipped.
        """
        dispatched = False
        for file, result in zip(self.files, self.results):
            if result.status != FileStatus.PENDING:
                continue

            if dispatched and self.settings.request_delay_seconds > 0:
                await self._sleep(self.settings.request_delay_seconds)

            if not await self.token.checkpoint():
                remaining = sum(1 for r in self.results if r.status == FileStatus.PENDING)
                logger.info("Batch stopped with %d file(s) still pending", remaining)
                break

            await self._process_one(file, result)
            dispatched = True

        summary = self.summary()
        logger.info(
            "Batch finished: %d succeeded, %d failed, %d pending, %d line item(s)",
            summary.succeeded, summary.failed, summary.pending, summary.total_items
        )
        return self.results

    async def _call_recognizer(self, file: UploadedFile) -> str:
        try:
            return await self.recognize(file)
        except RecognitionError:
            raise
        except Exception as e:
            error = classify_error(e)
            if isinstance(error, RateLimitError):
                raise error from e
            raise

    async def _process_one(self, file: UploadedFile, result: FileProcessingResult) -> None:
        result.mark_processing()
        logger.info("Processing %s", result.file_name)

        def count_attempt(attempt: int) -> None:
            result.attempts = attempt

        try:
            raw = await retry_async(
                lambda: self._call_recognizer(file),
                max_attempts=self.settings.max_attempts,
                base_delay=self.settings.backoff_base_seconds,
                factor=self.settings.backoff_factor,
                token=self.token,
                sleep=self._sleep,
                on_attempt=count_attempt
            )
            reconciled, ocr_blocks = interpret_model_output(
                raw,
                source_file_name=result.file_name,
                tax_policy=self.settings.missing_tax_policy,
                id_factory=self._id_factory
            )
        except MalformedOutputError as e:
            logger.error("Unparseable model output for %s: %r", result.file_name, e.raw[:200])
            result.mark_error(f"Could not read the model response as JSON: {e}")
            return
        except RateLimitError as e:
            logger.error("Giving up on %s after %d attempt(s): %s", result.file_name, result.attempts, e)
            result.mark_error(f"Rate limited after {result.attempts} attempt(s): {e}")
            return
        except RecognitionError as e:
            logger.error("Recognition failed for %s: %s", result.file_name, e)
            result.mark_error(f"Recognition failed: {e}")
            return
        except Exception as e:
            logger.exception("Unexpected failure while processing %s", result.file_name)
            result.mark_error(str(e) or e.__class__.__name__)
            return

        result.mark_success(reconciled.line_items, ocr_blocks, reconciled.warnings)
        logger.info(
            "Processed %s: %d line item(s), %d warning(s)",
            result.file_name, len(reconciled.line_items), len(reconciled.warnings)
        )


async def process_files(
    files: Sequence[UploadedFile],
    recognize: Recognizer,
    *,
    settings: Optional[Settings] = None,
    token: Optional[CancellationToken] = None,
    sleep: Sleep = asyncio.sleep
) -> List[FileProcessingResult]:
    """Recognize, normalize and reconcile ``files`` one after another.

    Every processed file ends as ``success`` or ``error``; files left
    unstarted by a stop stay ``pending``. Only invalid arguments raise.
    """
    processor = BatchProcessor(files, recognize, settings=settings, token=token, sleep=sleep)
    return await processor.run()
