"""
User Directory

Redis-backed user records: identity, bcrypt password hash, roles, account
state and the TOTP enrollment fields used by the MFA service.

Every change to the enrollment goes through one of the update functions
below. Each is a single Lua script, so the enabled flag, the secret and the
backup-code list always change together:

- enable_mfa: only when MFA is currently off
- disable_mfa: clears flag, secret, timestamp and backup codes
- replace_backup_codes: swaps the whole hash list
- consume_backup_code_hash: removes one hash; concurrent callers presenting
  the same code cannot both remove it
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

import bcrypt
import redis

from token_encryption import SecretEncryption


class UserExistsError(ValueError):
    """Username or email already registered."""


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass
class UserRecord:
    """User account with TOTP enrollment state."""
    id: str
    username: str
    email: str
    password_hash: str = field(repr=False)
    roles: List[str] = field(default_factory=list)
    enabled: bool = True
    created_at: Optional[str] = None
    last_login: Optional[str] = None
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = field(default=None, repr=False)
    mfa_backup_codes: Optional[List[str]] = field(default=None, repr=False)
    mfa_enabled_at: Optional[str] = None


class UserDirectory:
    """
    User records in Redis.

    Keys:
    - user:{id}                 hash with the record fields
    - user:{id}:backup_codes    list of SHA-256 backup-code hashes
    - user:by_username:{name}   id lookup
    - user:by_email:{email}     id lookup
    - user:next_id              id counter
    """

    USER_PREFIX = "user:"
    USERNAME_INDEX = "user:by_username:"
    EMAIL_INDEX = "user:by_email:"
    ID_COUNTER = "user:next_id"

    def __init__(
        self,
        redis_client: redis.Redis,
        encryption: Optional[SecretEncryption] = None,
        clock=time.time
    ):
        """
        Initialize the directory.

        Args:
            redis_client: Redis client created with decode_responses=True
            encryption: Cipher for TOTP secrets at rest (None: stored as-is)
            clock: Returns the current Unix time
        """
        self.redis_client = redis_client
        self.encryption = encryption
        self.clock = clock
        self._load_lua_scripts()

    def _load_lua_scripts(self):
        # KEYS[1] = user hash, KEYS[2] = backup code list
        self.enable_mfa_script = self.redis_client.register_script("""
            if redis.call('EXISTS', KEYS[1]) == 0 then
                return 0
            end
            if redis.call('HGET', KEYS[1], 'mfa_enabled') == '1' then
                return 0
            end
            redis.call('HSET', KEYS[1], 'mfa_enabled', '1', 'mfa_secret', ARGV[1], 'mfa_enabled_at', ARGV[2])
            redis.call('DEL', KEYS[2])
            for i = 3, #ARGV do
                redis.call('RPUSH', KEYS[2], ARGV[i])
            end
            return 1
        """)

        self.disable_mfa_script = self.redis_client.register_script("""
            if redis.call('HGET', KEYS[1], 'mfa_enabled') ~= '1' then
                return 0
            end
            redis.call('HSET', KEYS[1], 'mfa_enabled', '0')
            redis.call('HDEL', KEYS[1], 'mfa_secret', 'mfa_enabled_at')
            redis.call('DEL', KEYS[2])
            return 1
        """)

        self.replace_backup_codes_script = self.redis_client.register_script("""
            if redis.call('HGET', KEYS[1], 'mfa_enabled') ~= '1' then
                return 0
            end
            redis.call('DEL', KEYS[2])
            for i = 1, #ARGV do
                redis.call('RPUSH', KEYS[2], ARGV[i])
            end
            return 1
        """)

        # Returns the remaining count, or -1 when nothing was removed
        self.consume_backup_code_script = self.redis_client.register_script("""
            if redis.call('HGET', KEYS[1], 'mfa_enabled') ~= '1' then
                return -1
            end
            local removed = redis.call('LREM', KEYS[2], 1, ARGV[1])
            if removed == 0 then
                return -1
            end
            return redis.call('LLEN', KEYS[2])
        """)

    def _key(self, user_id: str) -> str:
        return f"{self.USER_PREFIX}{user_id}"

    def _codes_key(self, user_id: str) -> str:
        return f"{self.USER_PREFIX}{user_id}:backup_codes"

    # ===== Records =====

    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        roles: Optional[List[str]] = None,
        enabled: bool = True
    ) -> UserRecord:
        """
        Create a user account.

        Args:
            username: Unique login name
            email: Unique email, also the TOTP account label
            password: Plaintext password (bcrypt-hashed before storage)
            roles: Role names, defaults to ["ROLE_USER"]
            enabled: Whether the account may log in

        Returns:
            The created UserRecord

        Raises:
            UserExistsError: If the username or email is taken
        """
        user_id = str(self.redis_client.incr(self.ID_COUNTER))

        if not self.redis_client.set(f"{self.USERNAME_INDEX}{username}", user_id, nx=True):
            raise UserExistsError(f"Username '{username}' is already taken")
        if not self.redis_client.set(f"{self.EMAIL_INDEX}{email.lower()}", user_id, nx=True):
            self.redis_client.delete(f"{self.USERNAME_INDEX}{username}")
            raise UserExistsError(f"Email '{email}' is already registered")

        password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')
        record = UserRecord(
            id=user_id,
            username=username,
            email=email,
            password_hash=password_hash,
            roles=list(roles) if roles else ["ROLE_USER"],
            enabled=enabled,
            created_at=_iso(self.clock()),
        )
        self.redis_client.hset(self._key(user_id), mapping={
            "id": record.id,
            "username": record.username,
            "email": record.email,
            "password_hash": record.password_hash,
            "roles": json.dumps(record.roles),
            "enabled": "1" if enabled else "0",
            "created_at": record.created_at,
            "mfa_enabled": "0",
        })
        logging.info(f"Created user {username} (id={user_id})")
        return record

    def get(self, user_id: Optional[str]) -> Optional[UserRecord]:
        """Load a user by id, decrypting the TOTP secret if present."""
        if not user_id:
            return None
        data = self.redis_client.hgetall(self._key(user_id))
        if not data:
            return None
        return self._to_record(user_id, data)

    def get_by_username(self, username: Optional[str]) -> Optional[UserRecord]:
        if not username:
            return None
        user_id = self.redis_client.get(f"{self.USERNAME_INDEX}{username}")
        return self.get(user_id)

    def _to_record(self, user_id: str, data: Dict[str, str]) -> UserRecord:
        mfa_enabled = data.get("mfa_enabled") == "1"
        secret = data.get("mfa_secret") or None
        if secret and self.encryption is not None:
            secret = self.encryption.decrypt(secret, user_id)

        return UserRecord(
            id=user_id,
            username=data["username"],
            email=data.get("email", ""),
            password_hash=data.get("password_hash", ""),
            roles=json.loads(data.get("roles") or "[]"),
            enabled=data.get("enabled", "1") == "1",
            created_at=data.get("created_at") or None,
            last_login=data.get("last_login") or None,
            mfa_enabled=mfa_enabled,
            mfa_secret=secret if mfa_enabled else None,
            mfa_backup_codes=self.backup_code_hashes(user_id) if mfa_enabled else None,
            mfa_enabled_at=data.get("mfa_enabled_at") or None,
        )

    @staticmethod
    def verify_password(user: UserRecord, password: Optional[str]) -> bool:
        if not password or not user.password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode('utf-8'), user.password_hash.encode('utf-8'))
        except ValueError:
            logging.error(f"Malformed password hash for user {user.id}")
            return False

    def record_login(self, user_id: str, at: Optional[float] = None) -> None:
        """Stamp last_login."""
        self.redis_client.hset(self._key(user_id), "last_login", _iso(self.clock() if at is None else at))

    def set_enabled(self, user_id: str, enabled: bool) -> bool:
        """Enable or disable an account. Returns False if the user is unknown."""
        key = self._key(user_id)
        if not self.redis_client.exists(key):
            return False
        self.redis_client.hset(key, "enabled", "1" if enabled else "0")
        return True

    # ===== TOTP enrollment =====

    def backup_code_hashes(self, user_id: str) -> List[str]:
        return self.redis_client.lrange(self._codes_key(user_id), 0, -1)

    def enable_mfa(self, user_id: str, secret: str, backup_code_hashes: List[str], at: Optional[float] = None) -> bool:
        """
        Turn MFA on with a secret and a fresh backup-code list.

        Args:
            user_id: User id
            secret: Base32 TOTP secret
            backup_code_hashes: SHA-256 hashes of the new backup codes
            at: Enrollment time (default: clock)

        Returns:
            False if the user is unknown or MFA was already enabled
        """
        stored_secret = secret
        if self.encryption is not None:
            stored_secret = self.encryption.encrypt(secret, user_id)

        enrolled_at = _iso(self.clock() if at is None else at)
        result = self.enable_mfa_script(
            keys=[self._key(user_id), self._codes_key(user_id)],
            args=[stored_secret, enrolled_at] + list(backup_code_hashes)
        )
        return bool(result)

    def disable_mfa(self, user_id: str) -> bool:
        """Clear every enrollment field. Returns False if MFA was not enabled."""
        result = self.disable_mfa_script(keys=[self._key(user_id), self._codes_key(user_id)])
        return bool(result)

    def replace_backup_codes(self, user_id: str, backup_code_hashes: List[str]) -> bool:
        """Replace the whole backup-code list. Returns False if MFA is not enabled."""
        result = self.replace_backup_codes_script(
            keys=[self._key(user_id), self._codes_key(user_id)],
            args=list(backup_code_hashes)
        )
        return bool(result)

    def consume_backup_code_hash(self, user_id: str, code_hash: str) -> Optional[int]:
        """
        Remove one backup-code hash.

        Args:
            user_id: User id
            code_hash: SHA-256 hex digest of the normalized code

        Returns:
            Number of codes left, or None if the hash was not present
        """
        remaining = int(self.consume_backup_code_script(
            keys=[self._key(user_id), self._codes_key(user_id)],
            args=[code_hash]
        ))
        if remaining < 0:
            return None
        return remaining
