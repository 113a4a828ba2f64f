"""Task result pipeline.

Calls the checker sidecar for one triggered task, applies the batch
acceptance policy and commits every successful inference to the ledger.

Acceptance policy:
1. Any ``error`` item rejects the whole batch (first one wins, nothing is submitted).
2. An empty batch is a successful "no work" task.
3. Success items without a usable payload, or with no usable signing
   credential, are skipped with a log line; the task still succeeds.

Repeated runs with the same input submit new transactions each time.
"""

from __future__ import annotations

import logging
from typing import Optional

from avs_pipeline.core.config import LedgerConfig
from avs_pipeline.core.exceptions import (
    ItemFailedError,
    KeystoreError,
    LedgerError,
    LedgerSubmissionError,
)
from avs_pipeline.core.models import (
    InferencePayload,
    LedgerSubmission,
    TaskResultItem,
    TaskSummary,
)
from avs_pipeline.ledger.client import Ledger
from avs_pipeline.ledger.keystore import Keystore, Signer
from avs_pipeline.pipeline.checker_client import CheckerClient

logger = logging.getLogger("avs.pipeline.task_runner")

DEFAULT_ITEM_ERROR = "Unknown error"


class TaskResultPipeline:
    """Runs one task end to end.

    Injected dependencies:
        checker: HTTP client for the checker sidecar.
        keystore: Source of signing credentials.
        ledger: Where successful results are recorded.
        config: Contract address and credential scheme.
    """

    def __init__(
        self,
        checker: CheckerClient,
        keystore: Keystore,
        ledger: Ledger,
        config: Optional[LedgerConfig] = None,
    ):
        self.checker = checker
        self.keystore = keystore
        self.ledger = ledger
        self.config = config or LedgerConfig()

    async def run_task(self, file_reference: str, checker_address: str) -> TaskSummary:
        """Process one trigger.

        Raises:
            CheckerTransportError, CheckerHTTPError, EnvelopeDecodeError:
                The checker call failed.
            ItemFailedError: The batch contains an ``error`` item.
            LedgerSubmissionError: The ledger failed a submission.
        """
        envelope = await self.checker.fetch_results(checker_address, file_reference)

        failed = envelope.first_error()
        if failed is not None:
            message = failed.message or DEFAULT_ITEM_ERROR
            logger.error("Inference error for %s: %s", failed.reference, message)
            raise ItemFailedError(failed.reference, message)

        summary = TaskSummary(file_reference=file_reference, processed_count=envelope.processed_count)
        if not envelope.items:
            logger.debug("No files to process")
            summary.no_work = True
            return summary

        for item in envelope.items:
            if not item.is_success:
                logger.debug("Ignoring %s item for %s", item.status, item.reference)
                continue
            if item.payload is None:
                logger.debug("Success item %s carries no payload", item.reference)
                summary.skipped += 1
                continue
            tx_id = await self._submit_item(item)
            if tx_id is None:
                summary.skipped += 1
                continue
            summary.submitted += 1
            summary.transactions.append((item.reference, tx_id))

        logger.info(
            "Task %s done: processed=%d submitted=%d skipped=%d",
            file_reference or "<default>", summary.processed_count, summary.submitted, summary.skipped,
        )
        return summary

    async def _submit_item(self, item: TaskResultItem) -> Optional[str]:
        try:
            payload = InferencePayload.parse(item.payload)
        except ValueError as e:
            logger.warning("Skipping %s: unparseable inference payload (%s)", item.reference, e)
            return None

        signer = self._select_signer()
        if signer is None:
            logger.error("No %s keys found in keystore, skipping %s", self.config.credential_scheme, item.reference)
            return None

        submission = LedgerSubmission.from_payload(payload)
        logger.info(
            "\n=== BLOCKCHAIN SUBMISSION ===\nFile: %s\nPrediction: %s\nConfidence: %.4f%%\n"
            "===========================",
            payload.subject, payload.label, payload.confidence * 100.0,
        )

        try:
            tx_id = await self.ledger.submit_inference_result(submission, signer)
        except LedgerSubmissionError:
            raise
        except LedgerError as e:
            raise LedgerSubmissionError(item.reference, str(e)) from e
        logger.info("Transaction submitted: %s", tx_id)
        return tx_id

    def _select_signer(self) -> Optional[Signer]:
        """First credential of the configured scheme whose secret can be exposed."""
        try:
            credentials = self.keystore.list_credentials(self.config.credential_scheme)
        except KeystoreError as e:
            logger.error("Keystore listing failed: %s", e)
            return None

        for credential in credentials:
            try:
                secret = self.keystore.expose_secret(credential)
            except KeystoreError as e:
                logger.warning("Credential %s unusable: %s", credential.key_id, e)
                continue
            if secret:
                return Signer(credential=credential, secret=secret)
        return None
