"""
This module defines the ProgressStore class, which owns the canonical progress
document of the current user. It loads the document through a backend,
migrates it forward, keeps the streak up to date, applies mutations in call
order and persists them with a debounced, coalescing write strategy.

Debounce policy: every mutation marks the document dirty and re-arms one
shared timer. Only the timer's expiry writes, and only if the document is
still dirty. The write always serializes the latest in-memory document, so a
burst of mutations costs a single write. `flush()` writes immediately and
cancels the timer.
"""

import asyncio
import logging
from datetime import date
from typing import Callable, Iterable, Mapping, Optional, Union

from .backends import ProgressBackend
from .constants import DEFAULT_DEBOUNCE_SECONDS, FIRST_LEARN_XP_BONUS
from .exceptions import LinguaSyncError
from .migrations import apply_day_rollover, migrate_document
from .models import ProgressDocument

logger = logging.getLogger(__name__)

TransformResult = Union[ProgressDocument, Mapping, None]
Transform = Callable[[ProgressDocument], TransformResult]


class ProgressStore:
    """
    Owns one user's progress document and its persistence.

    The document is only ever changed through `apply_mutation` (and the named
    mutations built on it) or `reset_all`; readers receive deep copies.
    """

    def __init__(
        self,
        backend: ProgressBackend,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        today: Callable[[], date] = date.today,
    ):
        """
        Parameters:
            backend: Where the document is loaded from and saved to.
            debounce_seconds: Quiet period after the last mutation before the
                document is written.
            today: Returns the current calendar date; injectable for tests.
        """
        self._backend = backend
        self._debounce_seconds = debounce_seconds
        self._today = today
        self._document: Optional[ProgressDocument] = None
        self._dirty = False
        # Bumped on every in-memory change; a save only clears the dirty flag
        # if nothing changed while it was in flight.
        self._revision = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._save_task: Optional[asyncio.Task] = None
        self._save_lock = asyncio.Lock()

    # --- Read access ---

    @property
    def backend(self) -> ProgressBackend:
        return self._backend

    @property
    def document(self) -> Optional[ProgressDocument]:
        """A copy of the in-memory document, or None before the first load."""
        if self._document is None:
            return None
        return self._document.model_copy(deep=True)

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    @property
    def pending_save(self) -> bool:
        """True while a debounced save is scheduled."""
        return self._timer is not None

    # --- Loading ---

    async def load_progress(self) -> ProgressDocument:
        """
        Load, migrate and roll over the stored document.

        Unsaved in-memory changes are flushed first; if that flush fails the
        in-memory document stays authoritative and is returned instead of
        the stale stored copy.

        Returns:
            A deep copy of the loaded document.

        Raises:
            LinguaSyncError: If the backend cannot be read (remote only; the
                local backend reports unreadable data as "no document").
        """
        if self._dirty and self._document is not None:
            await self.flush()
            if self._dirty:
                logger.warning(
                    "Unsaved progress could not be written; keeping the "
                    "in-memory document."
                )
                self._roll_over_in_memory()
                return self._document.model_copy(deep=True)

        revision = self._revision
        raw = await self._backend.load()
        if self._revision != revision and self._document is not None:
            # A mutation landed while the read was in flight; the stored copy
            # is older than what is in memory.
            logger.debug("Discarding stored progress superseded in memory.")
            return self._document.model_copy(deep=True)

        today = self._today()
        if raw is None:
            logger.info(
                f"No stored progress on the {self._backend.name} backend; "
                "starting from defaults."
            )
            document, changed = ProgressDocument.default(today), False
        else:
            document, changed = migrate_document(raw, today)
        if apply_day_rollover(document, today):
            changed = True

        self._document = document
        self._dirty = False
        if changed:
            await self._save_after_load()
        return document.model_copy(deep=True)

    async def _save_after_load(self) -> None:
        self._mark_changed()
        try:
            await self._persist()
        except LinguaSyncError as e:
            logger.warning(
                f"Could not save migrated progress ({e}); will retry."
            )
            self._schedule_save()

    def _roll_over_in_memory(self) -> None:
        if apply_day_rollover(self._document, self._today()):
            self._mark_changed()
            self._schedule_save()

    # --- Mutations ---

    async def apply_mutation(self, transform: Transform) -> ProgressDocument:
        """
        Apply `transform` to a copy of the current document and adopt the
        result.

        The transform may edit the copy in place and return None, or return
        a replacement document (model or stored-key mapping). The result is
        re-validated before it replaces the in-memory document; if the
        transform raises or the result is invalid, nothing changes. A
        debounced save is scheduled.

        Returns:
            A deep copy of the new document.
        """
        if self._document is None:
            await self.load_progress()

        working = self._document.model_copy(deep=True)
        result = transform(working)
        if result is None:
            result = working
        if isinstance(result, ProgressDocument):
            result = result.to_storage()
        document = ProgressDocument.from_storage(result)

        self._document = document
        self._mark_changed()
        self._schedule_save()
        return document.model_copy(deep=True)

    async def award_xp(self, amount: int) -> ProgressDocument:
        if amount < 0:
            raise ValueError("XP amount must not be negative")
        today = self._today()

        def transform(document: ProgressDocument) -> None:
            apply_day_rollover(document, today)
            document.xp += amount

        return await self.apply_mutation(transform)

    async def increment_completion(
        self, kind: str, by: int = 1
    ) -> ProgressDocument:
        if not kind:
            raise ValueError("Completion kind must not be empty")
        if by < 0:
            raise ValueError("Completion increment must not be negative")
        today = self._today()

        def transform(document: ProgressDocument) -> None:
            apply_day_rollover(document, today)
            document.completions[kind] = (
                document.completions.get(kind, 0) + by
            )

        return await self.apply_mutation(transform)

    async def mark_learned(self, word: str) -> ProgressDocument:
        """Count `word` as learned; the first time also awards a bonus."""
        _require_word(word)
        today = self._today()

        def transform(document: ProgressDocument) -> None:
            apply_day_rollover(document, today)
            if word not in document.words_learned:
                document.xp += FIRST_LEARN_XP_BONUS
            document.words_learned[word] = (
                document.words_learned.get(word, 0) + 1
            )

        return await self.apply_mutation(transform)

    async def mark_error(self, word: str) -> ProgressDocument:
        _require_word(word)
        today = self._today()

        def transform(document: ProgressDocument) -> None:
            apply_day_rollover(document, today)
            document.errors[word] = document.errors.get(word, 0) + 1

        return await self.apply_mutation(transform)

    async def record_review(self, word: str) -> ProgressDocument:
        _require_word(word)
        today = self._today()

        def transform(document: ProgressDocument) -> None:
            apply_day_rollover(document, today)
            document.reviews[word] = today

        return await self.apply_mutation(transform)

    async def set_narration_mode(self, mode: str) -> ProgressDocument:
        def transform(document: ProgressDocument) -> None:
            document.settings.narration_mode = mode

        return await self.apply_mutation(transform)

    async def set_theme_mode(self, theme: str) -> ProgressDocument:
        def transform(document: ProgressDocument) -> None:
            document.settings.theme = theme

        return await self.apply_mutation(transform)

    async def set_activity_mode(
        self, activity: str, mode: str
    ) -> ProgressDocument:
        def transform(document: ProgressDocument) -> None:
            document.settings.activity_modes[activity] = mode

        return await self.apply_mutation(transform)

    async def reset_pack_progress(
        self, words: Iterable[str]
    ) -> ProgressDocument:
        """Forget learned/error/review history for the words of one pack.
        XP, streak and completions are kept."""
        targets = set(words)

        def transform(document: ProgressDocument) -> None:
            for mapping in (
                document.words_learned,
                document.errors,
                document.reviews,
            ):
                for word in targets & set(mapping):
                    del mapping[word]

        return await self.apply_mutation(transform)

    async def reset_all(self) -> ProgressDocument:
        """
        Replace the stored document with a fresh default one right away,
        bypassing the debounce.

        Raises:
            LinguaSyncError: If the backend rejects the clear or the save; a
                debounced retry of the save is scheduled before raising.
        """
        self._cancel_timer()
        self._document = ProgressDocument.default(self._today())
        self._mark_changed()
        async with self._save_lock:
            revision = self._revision
            try:
                await self._backend.clear()
                await self._backend.save(self._document.to_storage())
            except LinguaSyncError:
                self._schedule_save()
                raise
            if revision == self._revision:
                self._dirty = False
        logger.info("Progress reset to defaults.")
        return self._document.model_copy(deep=True)

    # --- Persistence ---

    async def flush(self, immediate: bool = False) -> None:
        """
        Write the in-memory document now if it has unsaved changes, cancelling
        any pending debounced save.

        Parameters:
            immediate: If True a failed write is raised to the caller; if
                False it is logged and retried on the debounce cadence.
        """
        if not self._dirty or self._document is None:
            return
        self._cancel_timer()
        try:
            await self._persist()
        except LinguaSyncError as e:
            if immediate:
                raise
            self._log_save_failure(e)
            self._schedule_save()

    async def close(self) -> None:
        """Cancel the timer and write any unsaved changes (raising on
        failure)."""
        if self._save_task is not None and not self._save_task.done():
            await self._save_task
        await self.flush(immediate=True)
        self._cancel_timer()

    async def _persist(self) -> None:
        # Saves are serialized so an older snapshot can never land after a
        # newer one.
        async with self._save_lock:
            if not self._dirty or self._document is None:
                return
            revision = self._revision
            await self._backend.save(self._document.to_storage())
            if revision == self._revision:
                self._dirty = False
            logger.debug(f"Progress saved to the {self._backend.name} backend.")

    def _mark_changed(self) -> None:
        self._dirty = True
        self._revision += 1

    def _schedule_save(self) -> None:
        loop = asyncio.get_running_loop()
        self._cancel_timer()
        self._timer = loop.call_later(self._debounce_seconds, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        if not self._dirty:
            return
        self._save_task = asyncio.ensure_future(self._save_from_timer())

    async def _save_from_timer(self) -> None:
        try:
            await self._persist()
        except LinguaSyncError as e:
            self._log_save_failure(e)
            if self._dirty and self._timer is None:
                self._schedule_save()

    def _log_save_failure(self, error: Exception) -> None:
        logger.warning(
            f"Saving progress to the {self._backend.name} backend failed "
            f"({error}); changes are kept locally only and will be retried "
            f"in {self._debounce_seconds}s."
        )


def _require_word(word: str) -> None:
    if not word or not word.strip():
        raise ValueError("Word must be a non-empty string")
