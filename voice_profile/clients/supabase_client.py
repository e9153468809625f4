"""Supabase client for voice profile persistence."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from supabase import create_client, Client
from postgrest.exceptions import APIError

from voice_profile.config import settings
from voice_profile.models.internal_models import EnrollmentSample, VoiceFeatures, VoiceProfile

logger = logging.getLogger(__name__)

PROFILES_TABLE = "voice_profiles"
SAMPLES_TABLE = "voice_enrollment_samples"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def profile_from_row(row: Dict[str, Any]) -> VoiceProfile:
    """Map a ``voice_profiles`` row onto a VoiceProfile."""
    features = row.get("voice_features")
    return VoiceProfile(
        id=row.get("id"),
        user_id=row["user_id"],
        profile_name=row.get("profile_name") or "My Voice Profile",
        enrollment_level=row.get("enrollment_level") or "standard",
        enrollment_phrases_count=row.get("enrollment_phrases_count") or 0,
        voice_features=VoiceFeatures.from_dict(features) if features else None,
        noise_threshold=float(row.get("noise_threshold", settings.default_noise_threshold)),
        is_enabled=bool(row.get("is_enabled", False)),
        enrolled_at=_parse_timestamp(row.get("enrolled_at")),
        created_at=_parse_timestamp(row.get("created_at")),
        updated_at=_parse_timestamp(row.get("updated_at")),
    )


def sample_from_row(row: Dict[str, Any]) -> EnrollmentSample:
    """Map a ``voice_enrollment_samples`` row onto an EnrollmentSample."""
    return EnrollmentSample(
        id=row.get("id"),
        phrase_index=row["phrase_index"],
        phrase_text=row["phrase_text"],
        audio_features=VoiceFeatures.from_dict(row["audio_features"]),
        duration_ms=row["duration_ms"],
        sample_rate=row["sample_rate"],
        quality_score=float(row["quality_score"]),
        recorded_at=_parse_timestamp(row.get("recorded_at")),
    )


class SupabaseClient:
    """Client for Supabase database operations."""

    def __init__(self):
        """Initialize Supabase client with configuration."""
        self._client: Optional[Client] = None
        self._url = settings.supabase_url
        self._key = settings.supabase_anon_key

    @property
    def client(self) -> Client:
        """Get or create Supabase client instance."""
        if self._client is None:
            self._client = create_client(self._url, self._key)
        return self._client

    async def health_check(self) -> bool:
        """Check if database connection is healthy."""
        try:
            self.client.table(PROFILES_TABLE).select("id", count="exact").limit(0).execute()
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


class VoiceProfileRepository:
    """Repository for voice profile rows, one per user."""

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    async def get_profile_by_user(self, user_id: str) -> Optional[VoiceProfile]:
        """Retrieve the profile owned by a user."""
        try:
            result = (
                self.client.client.table(PROFILES_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
            if not result.data:
                return None
            return profile_from_row(result.data[0])

        except APIError as e:
            logger.error(f"Database error retrieving voice profile for user {user_id}: {e}")
            raise

    async def upsert_profile(self, profile: VoiceProfile) -> VoiceProfile:
        """Create or replace the profile for ``profile.user_id``."""
        profile_data = {
            "user_id": profile.user_id,
            "profile_name": profile.profile_name,
            "enrollment_level": profile.enrollment_level,
            "enrollment_phrases_count": profile.enrollment_phrases_count,
            "voice_features": profile.voice_features.to_dict() if profile.voice_features else None,
            "noise_threshold": profile.noise_threshold,
            "is_enabled": profile.is_enabled,
            "enrolled_at": _format_timestamp(profile.enrolled_at),
        }

        try:
            result = self.client.client.table(PROFILES_TABLE).upsert(
                profile_data,
                on_conflict="user_id"
            ).execute()

            if not result.data:
                raise ValueError("Failed to create/update voice profile")

            logger.info(f"Successfully upserted voice profile for user {profile.user_id}")
            return profile_from_row(result.data[0])

        except APIError as e:
            logger.error(f"Database error upserting voice profile for user {profile.user_id}: {e}")
            raise

    async def update_profile(self, user_id: str, changes: Dict[str, Any]) -> Optional[VoiceProfile]:
        """Apply a partial update; returns None when the user has no profile."""
        try:
            result = (
                self.client.client.table(PROFILES_TABLE)
                .update(changes)
                .eq("user_id", user_id)
                .execute()
            )
            if not result.data:
                return None
            return profile_from_row(result.data[0])

        except APIError as e:
            logger.error(f"Database error updating voice profile for user {user_id}: {e}")
            raise

    async def delete_profile(self, user_id: str) -> bool:
        """Delete the user's profile; enrollment samples cascade in the database."""
        try:
            result = self.client.client.table(PROFILES_TABLE).delete().eq("user_id", user_id).execute()

            success = len(result.data) > 0
            if success:
                logger.info(f"Successfully deleted voice profile for user {user_id}")
            else:
                logger.warning(f"No voice profile found for user {user_id}")
            return success

        except APIError as e:
            logger.error(f"Database error deleting voice profile for user {user_id}: {e}")
            raise


class EnrollmentSampleRepository:
    """Repository for the per-phrase samples behind a profile."""

    def __init__(self, supabase_client: SupabaseClient):
        self.client = supabase_client

    async def get_samples_for_profile(self, profile_id: str) -> List[EnrollmentSample]:
        try:
            result = (
                self.client.client.table(SAMPLES_TABLE)
                .select("*")
                .eq("voice_profile_id", profile_id)
                .order("phrase_index")
                .execute()
            )
            return [sample_from_row(row) for row in result.data]

        except APIError as e:
            logger.error(f"Database error retrieving samples for profile {profile_id}: {e}")
            raise

    async def replace_samples_for_profile(
        self,
        profile_id: str,
        samples: List[EnrollmentSample]
    ) -> int:
        """Delete the profile's stored samples and insert the new set."""
        try:
            self.client.client.table(SAMPLES_TABLE).delete().eq("voice_profile_id", profile_id).execute()

            if not samples:
                return 0

            rows = [
                {
                    "voice_profile_id": profile_id,
                    "phrase_index": sample.phrase_index,
                    "phrase_text": sample.phrase_text,
                    "audio_features": sample.audio_features.to_dict(),
                    "duration_ms": sample.duration_ms,
                    "sample_rate": sample.sample_rate,
                    "quality_score": sample.quality_score,
                    "recorded_at": _format_timestamp(sample.recorded_at),
                }
                for sample in samples
            ]
            result = self.client.client.table(SAMPLES_TABLE).insert(rows).execute()

            logger.info(f"Stored {len(result.data)} enrollment samples for profile {profile_id}")
            return len(result.data)

        except APIError as e:
            logger.error(f"Database error storing samples for profile {profile_id}: {e}")
            raise


class DatabaseManager:
    """High-level database manager that coordinates repositories."""

    def __init__(self):
        """Initialize database manager with client and repositories."""
        self.client = SupabaseClient()
        self.profiles = VoiceProfileRepository(self.client)
        self.samples = EnrollmentSampleRepository(self.client)

    async def health_check(self) -> bool:
        """Check overall database health."""
        return await self.client.health_check()

    async def get_profile(self, user_id: str) -> Optional[VoiceProfile]:
        return await self.profiles.get_profile_by_user(user_id)

    async def save_enrollment(
        self,
        profile: VoiceProfile,
        samples: List[EnrollmentSample]
    ) -> VoiceProfile:
        """
        Persist a completed enrollment.

        Upserts the profile, then replaces its stored samples with the ones
        used to build the reference features. The profile alone is enough to
        verify against, so once it is stored a failed sample replace is
        logged and the saved profile is still returned.
        """
        saved = await self.retry_operation(lambda: self.profiles.upsert_profile(profile))
        if saved.id is None:
            raise ValueError(f"Stored voice profile for user {profile.user_id} has no id")

        try:
            await self.retry_operation(
                lambda: self.samples.replace_samples_for_profile(saved.id, samples)
            )
        except Exception as e:
            logger.warning(f"Stored voice profile {saved.id} but not its enrollment samples: {e}")
        return saved

    async def retry_operation(self, operation, max_retries: int = 3, base_delay: float = 1.0):
        """Retry database operations with exponential backoff."""
        last_exception = None

        for attempt in range(max_retries):
            try:
                return await operation()
            except Exception as e:
                last_exception = e
                if attempt < max_retries - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(f"Database operation failed (attempt {attempt + 1}/{max_retries}), retrying in {delay}s: {e}")
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Database operation failed after {max_retries} attempts: {e}")

        raise last_exception
