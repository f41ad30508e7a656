"""
Strava Credential Manager

Holds and refreshes per-user Strava access tokens.

- SqlCredentialStore: reads/writes the encrypted token columns on User.
- CredentialManager.get_valid_token(): returns the stored access token, or
  refreshes it first when it expires within the refresh margin (5 minutes).

Refresh failures surface as RefreshFailed so batch callers can skip the
user without aborting the batch.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from core.clock import Clock, as_utc, utc_now
from core.config import settings
from core.database import SessionLocal
from core.exceptions import CredentialNotFound, PersistenceError, RefreshFailed, StravaSyncError
from models import User
from services.strava_service import refresh_access_token
from services.token_encryption import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessCredential:
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: Optional[datetime]


class SqlCredentialStore:
    """Credential collaborator backed by the user table. Opens a short session per call."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def get_credential(self, user_id: str) -> Optional[AccessCredential]:
        db: Session = self._session_factory()
        try:
            user = db.query(User).filter(User.id == user_id).first()
            if not user or not user.strava_access_token or not user.strava_refresh_token:
                return None
            access_token = decrypt_token(user.strava_access_token)
            refresh_token = decrypt_token(user.strava_refresh_token)
            if not access_token or not refresh_token:
                return None
            return AccessCredential(
                user_id=user_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=as_utc(user.strava_token_expires_at),
            )
        finally:
            db.close()

    def save_refreshed(self, user_id: str, credential: AccessCredential) -> None:
        db: Session = self._session_factory()
        try:
            user = db.query(User).filter(User.id == user_id).first()
            if not user:
                raise CredentialNotFound(user_id)
            user.strava_access_token = encrypt_token(credential.access_token)
            user.strava_refresh_token = encrypt_token(credential.refresh_token)
            user.strava_token_expires_at = credential.expires_at
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceError("save_refreshed", e) from e
        finally:
            db.close()


class CredentialManager:
    def __init__(
        self,
        store: Optional[SqlCredentialStore] = None,
        refresh_fn: Callable[[str], Dict] = refresh_access_token,
        now: Clock = utc_now,
        refresh_margin_s: Optional[int] = None,
    ):
        self._store = store or SqlCredentialStore()
        self._refresh_fn = refresh_fn
        self._now = now
        margin = settings.STRAVA_TOKEN_REFRESH_MARGIN_S if refresh_margin_s is None else refresh_margin_s
        self._margin = timedelta(seconds=margin)

    def _load(self, user_id: str) -> AccessCredential:
        credential = self._store.get_credential(user_id)
        if credential is None:
            raise CredentialNotFound(user_id)
        return credential

    def _is_expiring(self, credential: AccessCredential) -> bool:
        # Without a stored expiry we cannot tell; rely on the stored token.
        if credential.expires_at is None:
            return False
        return credential.expires_at - self._now() < self._margin

    def needs_refresh(self, user_id: str) -> bool:
        """True when get_valid_token() would have to call Strava first."""
        credential = self._store.get_credential(user_id)
        return credential is not None and self._is_expiring(credential)

    def get_valid_token(self, user_id: str) -> str:
        credential = self._load(user_id)
        if not self._is_expiring(credential):
            return credential.access_token
        return self._refresh(credential).access_token

    def refresh(self, user_id: str) -> AccessCredential:
        """Unconditionally refresh and persist the user's token."""
        return self._refresh(self._load(user_id))

    def _refresh(self, credential: AccessCredential) -> AccessCredential:
        user_id = credential.user_id
        try:
            token_data = self._refresh_fn(credential.refresh_token)
            access_token = token_data["access_token"]
        except (StravaSyncError, KeyError, TypeError) as e:
            logger.warning(f"Token refresh failed for user {user_id}: {e}")
            raise RefreshFailed(user_id, str(e)) from e

        expires_at = None
        if token_data.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(token_data["expires_at"]), tz=timezone.utc)
        elif token_data.get("expires_in"):
            expires_at = self._now() + timedelta(seconds=int(token_data["expires_in"]))

        refreshed = replace(
            credential,
            access_token=access_token,
            # Strava may rotate the refresh token; keep the old one if not.
            refresh_token=token_data.get("refresh_token") or credential.refresh_token,
            expires_at=expires_at,
        )
        self._store.save_refreshed(user_id, refreshed)
        logger.info(f"Token refresh successful for user {user_id}")
        return refreshed
