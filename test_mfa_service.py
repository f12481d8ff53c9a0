"""
Tests for TOTP enrollment, second-factor login and backup codes.
"""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pyotp
import pytest

import totp_engine
from mfa_service import MfaService
from oauth_errors import MfaError, MfaErrorKind
from token_encryption import SecretEncryption
from user_directory import UserDirectory


@pytest.fixture
def mfa(directory, session_tokens, audit, config, clock):
    return MfaService(directory, session_tokens, audit, config, clock=clock)


@pytest.fixture
def enrolled(mfa, user, clock):
    """User with MFA enabled. Returns (secret, backup codes, enrollment time)."""
    setup = mfa.initiate_setup(user.id)
    at = clock.now
    codes = mfa.complete_setup(user.id, setup.secret, totp_engine.totp(setup.secret, at), now=at)
    return setup.secret, codes, at


def error_kind(exc_info):
    return exc_info.value.kind


class TestSetup:

    def test_initiate_returns_secret_and_uri(self, mfa, user, directory):
        setup = mfa.initiate_setup(user.id)

        assert len(setup.secret) == 32
        assert setup.issuer == "AI Security Monitor"
        assert setup.account_name == "alice@example.com"
        assert pyotp.parse_uri(setup.qr_code_uri).secret == setup.secret
        # Nothing is active yet
        assert not directory.get(user.id).mfa_enabled

    def test_setup_dict_is_camel_case(self, mfa, user):
        body = mfa.initiate_setup(user.id).to_dict()
        assert set(body) == {"secret", "qrCodeUri", "issuer", "accountName"}

    def test_wrong_code_leaves_mfa_disabled(self, mfa, user, directory, clock):
        setup = mfa.initiate_setup(user.id)
        wrong = totp_engine.totp(setup.secret, clock.now + 300)

        with pytest.raises(MfaError) as exc:
            mfa.complete_setup(user.id, setup.secret, wrong, now=clock.now)

        assert error_kind(exc) == MfaErrorKind.INVALID_CODE
        record = directory.get(user.id)
        assert not record.mfa_enabled
        assert record.mfa_secret is None
        assert directory.backup_code_hashes(user.id) == []

    def test_correct_code_enables_and_returns_ten_codes(self, enrolled, user, directory):
        secret, codes, _ = enrolled
        record = directory.get(user.id)

        assert record.mfa_enabled
        assert record.mfa_secret == secret
        assert record.mfa_enabled_at is not None
        assert len(codes) == 10
        assert len(set(record.mfa_backup_codes)) == 10
        # Only hashes are stored
        assert not set(codes) & set(record.mfa_backup_codes)

    def test_already_enabled(self, mfa, enrolled, user):
        with pytest.raises(MfaError) as exc:
            mfa.initiate_setup(user.id)
        assert error_kind(exc) == MfaErrorKind.ALREADY_ENABLED
        assert exc.value.status_code == 400

    def test_unknown_user(self, mfa):
        with pytest.raises(MfaError) as exc:
            mfa.initiate_setup("999")
        assert error_kind(exc) == MfaErrorKind.USER_NOT_FOUND

    def test_setup_is_audited(self, mfa, user, audit, clock):
        setup = mfa.initiate_setup(user.id)
        with pytest.raises(MfaError):
            mfa.complete_setup(user.id, setup.secret, "000000", now=clock.now + 10_000)
        actions = [e["action"] for e in audit.recent_events()]
        assert actions[:2] == ["MFA_SETUP_FAILED", "MFA_SETUP_INITIATED"]


class TestLoginCode:

    @pytest.mark.parametrize("offset", [-30, 0, 30])
    def test_code_within_drift_accepted(self, mfa, enrolled, user, offset):
        secret, _, at = enrolled
        result = mfa.verify_login_code(user.id, totp_engine.totp(secret, at), now=at + offset)
        assert result.token
        assert not result.backup_code_used

    @pytest.mark.parametrize("offset", [-90, 90])
    def test_code_outside_drift_rejected(self, mfa, enrolled, user, offset):
        secret, _, at = enrolled
        with pytest.raises(MfaError) as exc:
            mfa.verify_login_code(user.id, totp_engine.totp(secret, at), now=at + offset)
        assert error_kind(exc) == MfaErrorKind.INVALID_CODE
        assert exc.value.status_code == 401

    def test_successful_code_issues_full_session(self, mfa, enrolled, user, session_tokens):
        secret, _, at = enrolled
        result = mfa.verify_login_code(user.id, totp_engine.totp(secret, at), now=at)
        claims = session_tokens.decode(result.token)
        assert claims.subject == "alice"
        assert not claims.mfa_pending

    def test_not_enabled(self, mfa, user):
        with pytest.raises(MfaError) as exc:
            mfa.verify_login_code(user.id, "123456")
        assert error_kind(exc) == MfaErrorKind.NOT_ENABLED

    def test_failure_is_audited(self, mfa, enrolled, user, audit):
        with pytest.raises(MfaError):
            mfa.verify_login_code(user.id, "abcdef")
        assert audit.recent_events(1)[0]["action"] == "MFA_VERIFY_FAILED"


class TestBackupCodes:

    def test_using_one_code_leaves_nine(self, mfa, enrolled, user, directory):
        _, codes, _ = enrolled
        result = mfa.verify_login_backup_code(user.id, codes[3])

        assert result.backup_code_used
        assert result.remaining_backup_codes == 9
        assert len(directory.backup_code_hashes(user.id)) == 9
        assert totp_engine.hash_backup_code(codes[3]) not in directory.backup_code_hashes(user.id)

    def test_reuse_fails(self, mfa, enrolled, user):
        _, codes, _ = enrolled
        mfa.verify_login_backup_code(user.id, codes[0])
        with pytest.raises(MfaError) as exc:
            mfa.verify_login_backup_code(user.id, codes[0])
        assert error_kind(exc) == MfaErrorKind.INVALID_CODE

    def test_code_is_case_and_hyphen_insensitive(self, mfa, enrolled, user):
        _, codes, _ = enrolled
        assert mfa.verify_login_backup_code(user.id, codes[5].lower().replace("-", "")).remaining_backup_codes == 9

    def test_low_count_warning(self, mfa, enrolled, user):
        _, codes, _ = enrolled
        for code in codes[:7]:
            result = mfa.verify_login_backup_code(user.id, code)
            assert not result.low_backup_codes

        result = mfa.verify_login_backup_code(user.id, codes[7])
        assert result.remaining_backup_codes == 2
        assert result.low_backup_codes
        body = result.to_dict()
        assert body["remainingBackupCodes"] == 2
        assert "warning" in body

    def test_concurrent_use_single_winner(self, mfa, enrolled, user, directory):
        _, codes, _ = enrolled

        def attempt(_):
            try:
                return mfa.verify_login_backup_code(user.id, codes[0])
            except MfaError:
                return None

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(8)))

        assert len([r for r in results if r is not None]) == 1
        assert len(directory.backup_code_hashes(user.id)) == 9

    def test_backup_use_is_audited(self, mfa, enrolled, user, audit):
        _, codes, _ = enrolled
        mfa.verify_login_backup_code(user.id, codes[0])
        event = audit.recent_events(1)[0]
        assert event["action"] == "MFA_BACKUP_CODE_USED"
        assert event["details"]["remaining_backup_codes"] == 9


class TestDisable:

    def test_disable_with_totp(self, mfa, enrolled, user, directory, clock):
        secret, _, _ = enrolled
        mfa.disable(user.id, totp_engine.totp(secret, clock.now), now=clock.now)

        record = directory.get(user.id)
        assert not record.mfa_enabled
        assert record.mfa_secret is None
        assert record.mfa_enabled_at is None
        assert directory.backup_code_hashes(user.id) == []

    def test_disable_with_backup_code(self, mfa, enrolled, user, directory):
        _, codes, _ = enrolled
        mfa.disable(user.id, codes[0])
        assert not directory.get(user.id).mfa_enabled

    def test_disable_with_wrong_code(self, mfa, enrolled, user, directory, clock):
        with pytest.raises(MfaError) as exc:
            mfa.disable(user.id, "000000", now=clock.now - 100_000)
        assert error_kind(exc) == MfaErrorKind.INVALID_CODE
        assert directory.get(user.id).mfa_enabled

    def test_disable_when_not_enabled(self, mfa, user):
        with pytest.raises(MfaError) as exc:
            mfa.disable(user.id, "123456")
        assert error_kind(exc) == MfaErrorKind.NOT_ENABLED

    def test_can_enroll_again_after_disable(self, mfa, enrolled, user, clock):
        secret, _, _ = enrolled
        mfa.disable(user.id, totp_engine.totp(secret, clock.now), now=clock.now)
        setup = mfa.initiate_setup(user.id)
        codes = mfa.complete_setup(user.id, setup.secret, totp_engine.totp(setup.secret, clock.now), now=clock.now)
        assert len(codes) == 10


class TestRegenerate:

    def test_regenerate_replaces_all_codes(self, mfa, enrolled, user, directory, clock):
        secret, old_codes, _ = enrolled
        mfa.verify_login_backup_code(user.id, old_codes[0])

        new_codes = mfa.regenerate_backup_codes(user.id, totp_engine.totp(secret, clock.now), now=clock.now)

        assert len(new_codes) == 10
        assert len(directory.backup_code_hashes(user.id)) == 10
        with pytest.raises(MfaError):
            mfa.verify_login_backup_code(user.id, old_codes[1])
        assert mfa.verify_login_backup_code(user.id, new_codes[0]).remaining_backup_codes == 9

    def test_backup_code_not_accepted_for_regeneration(self, mfa, enrolled, user):
        _, codes, _ = enrolled
        with pytest.raises(MfaError) as exc:
            mfa.regenerate_backup_codes(user.id, codes[0])
        assert error_kind(exc) == MfaErrorKind.INVALID_CODE


class TestStatus:

    def test_status_before_and_after(self, mfa, user, clock):
        assert mfa.status(user.id).to_dict() == {
            "mfaEnabled": False, "mfaEnabledAt": None, "backupCodesRemaining": None
        }
        setup = mfa.initiate_setup(user.id)
        mfa.complete_setup(user.id, setup.secret, totp_engine.totp(setup.secret, clock.now), now=clock.now)

        status = mfa.status(user.id)
        assert status.mfa_enabled
        assert status.backup_codes_remaining == 10


class TestEncryptedSecrets:

    def test_secret_encrypted_at_rest(self, redis_client, session_tokens, audit, config, clock):
        directory = UserDirectory(redis_client, encryption=SecretEncryption(SecretEncryption.generate_key()), clock=clock)
        mfa = MfaService(directory, session_tokens, audit, config, clock=clock)
        user = directory.create_user("bob", "bob@example.com", "pw")

        setup = mfa.initiate_setup(user.id)
        mfa.complete_setup(user.id, setup.secret, totp_engine.totp(setup.secret, clock.now), now=clock.now)

        raw = redis_client.hget(f"user:{user.id}", "mfa_secret")
        assert raw != setup.secret
        assert directory.get(user.id).mfa_secret == setup.secret
        assert mfa.verify_login_code(user.id, totp_engine.totp(setup.secret, clock.now), now=clock.now).token


class TestNotEnabledFailuresAudited:

    @pytest.mark.parametrize("operation,action", [
        (lambda mfa, uid: mfa.verify_login_code(uid, "123456"), "MFA_VERIFY_FAILED"),
        (lambda mfa, uid: mfa.verify_login_backup_code(uid, "ABCD-1234"), "MFA_BACKUP_CODE_FAILED"),
        (lambda mfa, uid: mfa.disable(uid, "123456"), "MFA_DISABLE_FAILED"),
        (lambda mfa, uid: mfa.regenerate_backup_codes(uid, "123456"), "MFA_BACKUP_REGEN_FAILED"),
    ])
    def test_not_enabled_is_audited(self, mfa, user, audit, operation, action):
        with pytest.raises(MfaError) as exc:
            operation(mfa, user.id)

        assert error_kind(exc) == MfaErrorKind.NOT_ENABLED
        event = audit.recent_events(1)[0]
        assert event["action"] == action
        assert event["success"] is False
        assert event["details"]["reason"] == "not_enabled"

    def test_lost_disable_race_is_audited(self, mfa, enrolled, user, directory, audit, clock):
        secret, _, _ = enrolled
        with patch.object(directory, "disable_mfa", return_value=False):
            with pytest.raises(MfaError) as exc:
                mfa.disable(user.id, totp_engine.totp(secret, clock.now), now=clock.now)

        assert error_kind(exc) == MfaErrorKind.NOT_ENABLED
        event = audit.recent_events(1)[0]
        assert event["action"] == "MFA_DISABLE_FAILED"
        assert event["details"]["reason"] == "not_enabled"

    def test_lost_regenerate_race_is_audited(self, mfa, enrolled, user, directory, audit, clock):
        secret, _, _ = enrolled
        with patch.object(directory, "replace_backup_codes", return_value=False):
            with pytest.raises(MfaError):
                mfa.regenerate_backup_codes(user.id, totp_engine.totp(secret, clock.now), now=clock.now)

        event = audit.recent_events(1)[0]
        assert event["action"] == "MFA_BACKUP_REGEN_FAILED"
        assert event["details"]["reason"] == "not_enabled"

    def test_non_string_code_is_invalid(self, mfa, enrolled, user):
        with pytest.raises(MfaError) as exc:
            mfa.verify_login_code(user.id, 123456)
        assert error_kind(exc) == MfaErrorKind.INVALID_CODE
        with pytest.raises(MfaError) as exc:
            mfa.verify_login_backup_code(user.id, 12345678)
        assert error_kind(exc) == MfaErrorKind.INVALID_CODE
