"""
Quota-gated calavera generation.

One request = one transaction: lock the email's ledger row, check the limit,
call the generator, store the calavera and bump the counter, commit. Any
failure after the lock rolls everything back.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Any, List, Optional, Callable, Protocol

from access_policy import AccessPolicy, company_name_for, is_valid_email
from background_assets import pick_asset
from db_store import Database, GeneratedArtifact, Transaction
from errors import GenerationError, GenerationFailed, InvalidIdentity, QuotaExceeded
from params_config import MAX_GENERATIONS, GENERATION_TIMEOUT_SECONDS
from prompt_builder import build_prompt
from quota_service import QuotaLedger, QuotaUsage

logger = logging.getLogger(__name__)


class ContentGenerator(Protocol):
    async def generate(self, prompt: str) -> str:
        ...


class GenerationCoordinator:
    """Runs the read-check-generate-increment sequence for one email at a time."""

    def __init__(
        self,
        db: Database,
        generator: ContentGenerator,
        policy: Optional[AccessPolicy] = None,
        max_generations: int = MAX_GENERATIONS,
        generation_timeout: float = GENERATION_TIMEOUT_SECONDS,
        asset_picker: Callable[[str], str] = pick_asset,
        template: Optional[str] = None,
    ):
        self.db = db
        self.generator = generator
        self.policy = policy or AccessPolicy()
        self.ledger = QuotaLedger(db, max_generations=max_generations)
        self.generation_timeout = generation_timeout
        self.asset_picker = asset_picker
        self.template = template
        self._executor = ThreadPoolExecutor(
            max_workers=db.pool_max,
            thread_name_prefix="generation-tx",
        )
        self._admission_gate: Optional[asyncio.Semaphore] = None
        self._admission_loop = None

    @property
    def max_generations(self) -> int:
        return self.ledger.max_generations

    async def generate(self, identity: str, request_details: Dict[str, Any]) -> GeneratedArtifact:
        """
        Generate and persist a calavera for `identity`.

        Raises:
            InvalidIdentity / IdentityNotAllowed: before any transaction opens
            QuotaExceeded: the email already used all its generations
            GenerationFailed: the generator failed, timed out or returned nothing
            StorageUnavailable: the database could not complete the transaction
        """
        domain = self.policy.check(identity)
        prompt = build_prompt(request_details, company_name_for(domain), template=self.template)

        tx = self.db.transaction()
        async with self._admission():
            try:
                await self._in_thread(tx.begin)

                # Blocks here while another request for the same email holds the row
                count = await self._in_thread(self.ledger.read_count_for_update, tx, identity)
                if self.ledger.is_exhausted(count):
                    await self._in_thread(tx.rollback)
                    logger.warning(f"Quota reached for {identity}: {count}/{self.max_generations}")
                    raise QuotaExceeded(limit=self.max_generations, used=count)

                content = await self._generate_content(identity, prompt)
                background_ref = self.asset_picker(identity)

                artifact = await self._in_thread(
                    self._persist, tx, identity, request_details, domain, content, background_ref
                )
            except BaseException:
                await self._in_thread(tx.rollback)
                raise
            finally:
                await self._in_thread(tx.close)

        logger.info(
            f"Calavera saved (ID: {artifact.id}), background: {artifact.background_ref}, "
            f"for: {identity} ({count + 1}/{self.max_generations})"
        )
        return artifact

    async def list_artifacts(self, identity: str) -> List[GeneratedArtifact]:
        """Calaveras generated for `identity`, newest first."""
        if not is_valid_email(identity):
            raise InvalidIdentity(f"Malformed email: {identity!r}")
        artifacts = await asyncio.to_thread(self.db.list_artifacts, identity)
        logger.info(f"Found {len(artifacts)} calaveras for: {identity}")
        return artifacts

    async def get_usage(self, identity: str) -> QuotaUsage:
        if not is_valid_email(identity):
            raise InvalidIdentity(f"Malformed email: {identity!r}")
        return await asyncio.to_thread(self.ledger.get_usage, identity)

    def close(self):
        """Stop the transaction executor. Running work is not waited for."""
        self._executor.shutdown(wait=False)

    async def _generate_content(self, identity: str, prompt: str) -> str:
        logger.info(f"Calling generator for: {identity}")
        try:
            content = await asyncio.wait_for(
                self.generator.generate(prompt),
                timeout=self.generation_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Generation timed out after {self.generation_timeout}s for {identity}")
            raise GenerationFailed("Generation timed out") from e
        except GenerationError:
            raise
        except Exception as e:
            logger.exception(f"Generator error for {identity}: {e}")
            raise GenerationFailed(str(e)) from e

        if not isinstance(content, str) or not content.strip():
            logger.error(f"Generator returned empty content for {identity}")
            raise GenerationFailed("Empty content")
        return content.strip()

    def _persist(
        self,
        tx: Transaction,
        identity: str,
        request_details: Dict[str, Any],
        company: str,
        content: str,
        background_ref: str,
    ) -> GeneratedArtifact:
        artifact = self.db.insert_artifact(tx, identity, request_details, company, content, background_ref)
        self.ledger.upsert_increment(tx, identity)
        tx.commit()
        return artifact

    def _admission(self) -> asyncio.Semaphore:
        """
        At most `pool_max` transactions in flight per event loop.

        Waiting for a slot happens on the loop, not in a worker thread, so a
        request holding a row lock always finds a free executor thread.
        """
        loop = asyncio.get_running_loop()
        if self._admission_loop is not loop:
            self._admission_gate = asyncio.Semaphore(self.db.pool_max)
            self._admission_loop = loop
        return self._admission_gate

    async def _in_thread(self, func, *args):
        """
        Run blocking storage work on the transaction executor.

        On cancellation the worker thread is awaited before re-raising, so the
        transaction's connection is never touched from two threads at once.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, func, *args)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            await asyncio.wait({future})
            raise
