"""Session tokens and per-bucket access checks.

Tokens live in process memory. A user may read and write the buckets they
own; the configured admin may use every bucket.
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlmodel import Session

from catalog.config import Settings
from catalog.exceptions import AccessDenied, NotAuthenticated
from catalog.models import Bucket

logger = logging.getLogger(__name__)


class SessionAccessService:
    def __init__(self, settings: Settings, engine):
        self.settings = settings
        self.engine = engine
        self.credentials = {settings.admin_username: settings.admin_password}
        self.tokens: Dict[str, dict] = {}

    def login(self, username: str, password: str) -> str:
        if username in self.credentials and self.credentials[username] == password:
            return self.create_token(username)
        raise NotAuthenticated("Invalid credentials")

    def create_token(self, username: str) -> str:
        token = secrets.token_hex(16)
        expiration = datetime.now(timezone.utc) + timedelta(minutes=self.settings.session_ttl_minutes)
        self.tokens[token] = {"username": username, "expires": expiration}
        logger.info("Opened session for %s", username)
        return token

    def validate_token(self, token: Optional[str]) -> Optional[str]:
        """Username behind a live token, None otherwise."""
        if not token:
            return None

        session = self.tokens.get(token)
        if not session:
            return None

        if datetime.now(timezone.utc) > session["expires"]:
            self.tokens.pop(token, None)
            return None

        return session["username"]

    def authorize(self, token: Optional[str], bucket_name: str) -> str:
        username = self.validate_token(token)
        if username is None:
            raise NotAuthenticated("Invalid or expired session")
        if username == self.settings.admin_username:
            return username

        with Session(self.engine) as session:
            bucket = session.get(Bucket, bucket_name)
            # Unknown buckets are left to the store, which reports BucketNotFound
            if bucket is not None and bucket.owner != username:
                logger.warning("User %s denied access to bucket %s", username, bucket_name)
                raise AccessDenied(f"Access to bucket '{bucket_name}' denied")
        return username
