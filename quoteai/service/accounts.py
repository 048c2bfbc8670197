"""Account lifecycle operations: erasing a user and merging a guest into a new account.

Each step commits on its own. A failing step aborts the request with a code
naming that step; earlier steps stay applied. Every step is a delete or re-key
filtered by owner id, so repeating a request after a failure is safe.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, TypeVar

from quoteai.logging import get_logger
from quoteai.service.errors import (
    OldUserNotAnonymousError,
    OldUserNotFoundError,
    StepFailedError,
)
from quoteai.service.identity import candidate_ids, canonical_id, storage_path
from quoteai.storage.errors import BackendError
from quoteai.storage.models import (
    CONVERSATIONS_TABLE,
    PROFILE_IMAGE_NAME,
    PROFILES_TABLE,
    SAVED_QUOTES_TABLE,
    Identity,
)

logger = get_logger(__name__)

T = TypeVar("T")


async def _run_step(step_code: str, awaitable: Awaitable[T], **log_fields: Any) -> T:
    """Await one backend call, converting a BackendError into a StepFailedError."""
    try:
        return await awaitable
    except BackendError as exc:
        logger.error(
            "account_step_failed",
            step=step_code,
            operation=exc.operation,
            status_code=exc.status_code,
            error=exc.message,
            **log_fields,
        )
        raise StepFailedError(step_code, exc.message) from exc


class AccountEraser:
    """Removes every row, stored file and finally the auth identity of a user."""

    def __init__(self, backend, *, bucket: str = "profile-images", list_limit: int = 100) -> None:
        self.backend = backend
        self.bucket = bucket
        self.list_limit = list_limit

    async def erase(self, identity: Identity) -> Dict[str, Any]:
        owner_ids = candidate_ids(identity.id)
        folder = canonical_id(identity.id)
        log = {"user_id": identity.id}

        # Rows and files go before the identity so a failed run can be retried
        # with the same credential.
        await _run_step(
            "delete_profile_failed", self.backend.delete_rows(PROFILES_TABLE, owner_ids), **log
        )
        await _run_step(
            "delete_quotes_failed", self.backend.delete_rows(SAVED_QUOTES_TABLE, owner_ids), **log
        )
        await _run_step(
            "delete_conversations_failed",
            self.backend.delete_rows(CONVERSATIONS_TABLE, owner_ids),
            **log,
        )

        names = await _run_step(
            "delete_storage_failed",
            self.backend.list_objects(self.bucket, folder, self.list_limit),
            **log,
        )
        if names:
            paths = [storage_path(folder, name) for name in names]
            await _run_step(
                "delete_storage_failed", self.backend.remove_objects(self.bucket, paths), **log
            )

        await _run_step("delete_user_failed", self.backend.delete_user(identity.id), **log)
        logger.info("account_erased", user_id=identity.id, files_removed=len(names))
        return {"success": True}


class AccountMerger:
    """Re-homes a guest identity's rows and files onto a newly signed-in identity."""

    def __init__(
        self,
        backend,
        *,
        bucket: str = "profile-images",
        list_limit: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.bucket = bucket
        self.list_limit = list_limit
        self.clock = clock

    async def merge(self, new_identity: Identity, old_user_id: str) -> Dict[str, Any]:
        new_id = canonical_id(new_identity.id)
        old_folder = canonical_id(old_user_id)
        log = {"user_id": new_identity.id, "old_user_id": old_user_id}

        if old_folder == new_id:
            return {"skipped": True, "reason": "same_user"}

        old_identity = await self.backend.get_user_by_id(old_user_id)
        if old_identity is None:
            raise OldUserNotFoundError("old user not found")
        if not old_identity.is_anonymous:
            raise OldUserNotAnonymousError("old user is not anonymous")

        if not await self._target_is_empty(new_id, log):
            logger.info("account_merge_skipped_target_not_empty", **log)
            return {"skipped": True, "reason": "target_not_empty"}

        old_ids = candidate_ids(old_user_id)
        await _run_step(
            "migrate_profile_failed",
            self.backend.update_rows(
                PROFILES_TABLE,
                old_ids,
                {"user_id": new_id, "updated_at": datetime.now(timezone.utc).isoformat()},
            ),
            **log,
        )
        await _run_step(
            "migrate_conversations_failed",
            self.backend.update_rows(CONVERSATIONS_TABLE, old_ids, {"user_id": new_id}),
            **log,
        )
        await _run_step(
            "migrate_quotes_failed",
            self.backend.update_rows(SAVED_QUOTES_TABLE, old_ids, {"user_id": new_id}),
            **log,
        )

        moved = await self._move_objects(old_folder, new_id)
        if PROFILE_IMAGE_NAME in moved:
            await self._refresh_profile_image(new_id)

        logger.info("account_merged", files_moved=len(moved), **log)
        return {"migrated": True}

    async def _target_is_empty(self, new_id: str, log: Dict[str, Any]) -> bool:
        checks = (
            (PROFILES_TABLE, "check_profile_failed"),
            (CONVERSATIONS_TABLE, "check_conversations_failed"),
            (SAVED_QUOTES_TABLE, "check_quotes_failed"),
        )
        counts: Dict[str, int] = {}
        for table, step_code in checks:
            counts[table] = await _run_step(
                step_code, self.backend.count_rows(table, new_id), **log
            )
        return not any(counts.values())

    async def _move_objects(self, old_folder: str, new_folder: str) -> List[str]:
        """Move every listed file; failures are logged and skipped."""
        try:
            names = await self.backend.list_objects(self.bucket, old_folder, self.list_limit)
        except BackendError as exc:
            logger.warning(
                "account_merge_list_failed",
                old_folder=old_folder,
                status_code=exc.status_code,
                error=exc.message,
            )
            return []

        moved: List[str] = []
        for name in names:
            source = storage_path(old_folder, name)
            destination = storage_path(new_folder, name)
            try:
                await self.backend.move_object(self.bucket, source, destination)
            except BackendError as exc:
                logger.warning(
                    "account_merge_move_failed",
                    source=source,
                    destination=destination,
                    status_code=exc.status_code,
                    error=exc.message,
                )
                continue
            moved.append(name)
        if len(moved) != len(names):
            logger.warning(
                "account_merge_files_left_behind",
                old_folder=old_folder,
                listed=len(names),
                moved=len(moved),
            )
        return moved

    async def _refresh_profile_image(self, new_id: str) -> None:
        public_url = self.backend.public_url(self.bucket, storage_path(new_id, PROFILE_IMAGE_NAME))
        url = f"{public_url}?t={int(self.clock() * 1000)}"
        try:
            await self.backend.update_rows(PROFILES_TABLE, [new_id], {"profile_image_url": url})
        except BackendError as exc:
            logger.warning(
                "account_merge_profile_image_update_failed",
                user_id=new_id,
                status_code=exc.status_code,
                error=exc.message,
            )
