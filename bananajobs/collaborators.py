# bananajobs/collaborators.py
"""
Boundary services the orchestrator talks to once a job has finished:
who the user is, where artifacts are kept and where usage is counted.
Production implementations go through the Supabase client.
"""

import logging
from datetime import date
from typing import Any, Dict, Optional, Protocol

from supabase import AsyncClient, AuthApiError, acreate_client

from .model import Artifact, CurrentUser, UsageRecord
from .utils import get_timestamp_ms

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/webm": "webm",
}


class AuthProvider(Protocol):
    async def get_current_user(self) -> Optional[CurrentUser]: ...


class ArtifactStore(Protocol):
    async def save_artifact(self, artifact: Artifact, metadata: Dict[str, Any]) -> str: ...


class UsageLedger(Protocol):
    async def record_usage(self, username: str, usage: UsageRecord) -> None: ...

    async def record_failure(self, username: str) -> None: ...


class StaticAuthProvider:
    """Auth provider for work that already knows its user, e.g. queued jobs."""

    def __init__(self, user: Optional[CurrentUser]):
        self.user = user

    async def get_current_user(self) -> Optional[CurrentUser]:
        return self.user


async def create_supabase(url: str, key: str) -> AsyncClient:
    return await acreate_client(url, key)


class SupabaseAuthProvider:
    def __init__(self, client: AsyncClient, access_token: str):
        self.client = client
        self.access_token = access_token

    async def get_current_user(self) -> Optional[CurrentUser]:
        try:
            resp = await self.client.auth.get_user(self.access_token)
        except AuthApiError as e:
            logger.warning("Supabase rejected the access token: %s", e)
            return None
        user = resp.user if resp else None
        if user is None:
            return None
        meta = user.user_metadata or {}
        return CurrentUser(id=user.id, username=meta.get("username") or user.email)


class SupabaseArtifactStore:
    """
    Blob artifacts are uploaded to a storage bucket; URL artifacts are kept
    where the provider put them. Either way a row lands in the generations
    table so the gallery can list it.
    """

    def __init__(self, client: AsyncClient, bucket: str = "generations", table: str = "generations"):
        self.client = client
        self.bucket = bucket
        self.table = table

    async def upload(self, data: bytes, path: str, content_type: str) -> str:
        bucket = self.client.storage.from_(self.bucket)
        await bucket.upload(
            path,
            data,
            file_options={"content-type": content_type, "cache-control": "3600", "upsert": "false"},
        )
        return await bucket.get_public_url(path)

    async def save_artifact(self, artifact: Artifact, metadata: Dict[str, Any]) -> str:
        if artifact.kind == "url":
            url = str(artifact.value)
        else:
            mime = artifact.mime_type or "application/octet-stream"
            owner = metadata.get("user_id") or "anonymous"
            name = f"{metadata.get('adapter', 'job')}_{get_timestamp_ms()}.{_EXTENSIONS.get(mime, 'bin')}"
            url = await self.upload(artifact.value, f"{owner}/{name}", mime)  # type: ignore[arg-type]

        row = {k: v for k, v in metadata.items() if v is not None}
        row["url"] = url
        await self.client.table(self.table).insert(row).execute()
        logger.info("Saved artifact for %s: %s", metadata.get("username"), url)
        return url


class SupabaseUsageLedger:
    """Read-modify-write of today's daily_usage_history row for a user."""

    def __init__(self, client: AsyncClient, table: str = "daily_usage_history"):
        self.client = client
        self.table = table

    async def record_usage(self, username: str, usage: UsageRecord) -> None:
        today = date.today().isoformat()
        result = await (
            self.client.table(self.table)
            .select("*")
            .eq("username", username)
            .eq("usage_date", today)
            .execute()
        )
        rows = result.data or []
        count_col = f"{usage.kind.value}_count"

        if rows:
            row = rows[0]
            update = {
                "generations_count": (row.get("generations_count") or 0) + 1,
                "generation_time_seconds": (row.get("generation_time_seconds") or 0) + round(usage.duration_seconds),
                count_col: (row.get(count_col) or 0) + 1,
                "tokens": (row.get("tokens") or 0) + (usage.tokens or 0),
                "cost_usd": float(row.get("cost_usd") or 0) + (usage.cost or 0),
            }
            await self.client.table(self.table).update(update).eq("id", row["id"]).execute()
        else:
            record = {
                "username": username,
                "usage_date": today,
                "generations_count": 1,
                "generation_time_seconds": round(usage.duration_seconds),
                "image_count": 1 if count_col == "image_count" else 0,
                "video_count": 1 if count_col == "video_count" else 0,
                "tokens": usage.tokens or 0,
                "cost_usd": usage.cost or 0,
                "errors_count": 0,
            }
            await self.client.table(self.table).insert(record).execute()
        logger.info("Usage recorded for %s: %s %.0fs", username, usage.kind.value, usage.duration_seconds)

    async def record_failure(self, username: str) -> None:
        await self.client.rpc(
            "increment_error_count",
            {"p_username": username, "p_date": date.today().isoformat()},
        ).execute()
        logger.info("Error count incremented for %s", username)
