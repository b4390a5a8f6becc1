"""
tests/test_login_orchestrator.py -- State machine tests for LoginOrchestrator.

Covers:
  - Lockout after threshold failures, and the exact expiry boundary
  - Second factor required / accepted / rejected, and its effect on counters
  - IP block short-circuits before any store read or scoring
  - Risk escalation: critical score on an unknown email blocks the IP
  - Counter reset on full success only
  - Disabled, unknown and password-less accounts
  - Credential store outages surface as SERVICE_UNAVAILABLE
  - Exactly one security event per terminal outcome

Fixtures used (from conftest.py):
  - auth_env: AuthEnv with a FakeClock, ScriptedScorer, RecordingSink and a
    CountingStore over an isolated in-memory AccountStore.
"""

from __future__ import annotations

from datetime import timedelta

from auth.errors import CredentialStoreError
from auth.models import (
    EventSeverity,
    FailureReason,
    LoginFailure,
    LoginStage,
    LoginSuccess,
    RiskLevel,
)

IP = "203.0.113.7"
SECRET = "JBSWY3DPEHPK3PXP"


def _failed(outcome, reason: FailureReason) -> bool:
    return isinstance(outcome, LoginFailure) and outcome.reason is reason


class TestLockout:
    def test_five_wrong_passwords_lock_a_correct_sixth(self, auth_env) -> None:
        """Threshold 5: five wrong passwords, then the right one is still refused."""
        account_id = auth_env.add_account()
        for _ in range(5):
            assert _failed(auth_env.attempt(password="wrong"), FailureReason.INVALID_CREDENTIALS)

        outcome = auth_env.attempt()
        assert _failed(outcome, FailureReason.ACCOUNT_LOCKED)
        assert outcome.stage is LoginStage.LOCKOUT_CHECK
        assert outcome.retry_after_seconds == 15 * 60

        account = auth_env.store.inner.get_by_id(account_id)
        assert account.failed_attempts == 5
        assert account.lockout_until == auth_env.clock() + timedelta(minutes=15)

    def test_lockout_event_written_on_threshold_failure(self, auth_env) -> None:
        auth_env.add_account()
        for _ in range(5):
            auth_env.attempt(password="wrong")
        assert auth_env.sink.types() == ["AUTH_LOGIN_FAILURE"] * 4 + ["ACCOUNT_LOCKOUT"]
        assert auth_env.sink.events[-1].severity is EventSeverity.MEDIUM

    def test_locked_account_does_not_check_password(self, auth_env) -> None:
        """While locked, even more wrong passwords do not touch the counter."""
        account_id = auth_env.add_account()
        for _ in range(5):
            auth_env.attempt(password="wrong")
        auth_env.store.calls.clear()

        assert _failed(auth_env.attempt(password="wrong"), FailureReason.ACCOUNT_LOCKED)
        assert auth_env.store.calls["record_failure"] == 0
        assert auth_env.store.inner.get_by_id(account_id).failed_attempts == 5

    def test_exact_expiry_instant_is_still_locked(self, auth_env) -> None:
        account_id = auth_env.add_account()
        for _ in range(5):
            auth_env.attempt(password="wrong")
        until = auth_env.store.inner.get_by_id(account_id).lockout_until

        auth_env.clock.set(until)
        assert _failed(auth_env.attempt(), FailureReason.ACCOUNT_LOCKED)

        auth_env.clock.set(until + timedelta(milliseconds=1))
        assert isinstance(auth_env.attempt(), LoginSuccess)

    def test_success_after_expiry_resets_counters(self, auth_env) -> None:
        account_id = auth_env.add_account()
        for _ in range(5):
            auth_env.attempt(password="wrong")
        auth_env.clock.advance(minutes=16)

        assert isinstance(auth_env.attempt(), LoginSuccess)
        account = auth_env.store.inner.get_by_id(account_id)
        assert account.failed_attempts == 0
        assert account.lockout_until is None


class TestCounterReset:
    def test_success_resets_partial_failures(self, auth_env) -> None:
        account_id = auth_env.add_account()
        for _ in range(3):
            auth_env.attempt(password="wrong")
        assert auth_env.store.inner.get_by_id(account_id).failed_attempts == 3

        assert isinstance(auth_env.attempt(), LoginSuccess)
        assert auth_env.store.inner.get_by_id(account_id).failed_attempts == 0

    def test_clean_account_skips_reset_write(self, auth_env) -> None:
        auth_env.add_account()
        assert isinstance(auth_env.attempt(), LoginSuccess)
        assert auth_env.store.calls["reset_counters"] == 0

    def test_failures_are_counted_per_account(self, auth_env) -> None:
        ana = auth_env.add_account("ana@example.com")
        ben = auth_env.add_account("ben@example.com")
        auth_env.attempt("ana@example.com", password="wrong")
        auth_env.attempt("ana@example.com", password="wrong")
        auth_env.attempt("ben@example.com", password="wrong")
        assert auth_env.store.inner.get_by_id(ana).failed_attempts == 2
        assert auth_env.store.inner.get_by_id(ben).failed_attempts == 1


class TestSecondFactor:
    def test_missing_code_requires_second_factor_without_counting(self, auth_env) -> None:
        account_id = auth_env.add_account(two_factor_secret=SECRET)
        auth_env.codes[SECRET] = "123456"

        outcome = auth_env.attempt()
        assert _failed(outcome, FailureReason.SECOND_FACTOR_REQUIRED)
        assert outcome.stage is LoginStage.SECOND_FACTOR_CHECK
        assert auth_env.store.calls["record_failure"] == 0
        assert auth_env.store.inner.get_by_id(account_id).failed_attempts == 0
        assert auth_env.sink.types() == ["AUTH_2FA_REQUIRED"]

    def test_wrong_password_never_reveals_second_factor(self, auth_env) -> None:
        auth_env.add_account(two_factor_secret=SECRET)
        outcome = auth_env.attempt(password="wrong")
        assert _failed(outcome, FailureReason.INVALID_CREDENTIALS)
        assert outcome.stage is LoginStage.PASSWORD_CHECK

    def test_valid_code_succeeds(self, auth_env) -> None:
        auth_env.add_account(two_factor_secret=SECRET)
        auth_env.codes[SECRET] = "123456"
        outcome = auth_env.attempt(otp="123 456")
        assert isinstance(outcome, LoginSuccess)
        assert auth_env.sink.types() == ["AUTH_2FA_SUCCESS", "AUTH_LOGIN_SUCCESS"]

    def test_wrong_code_counts_as_failure(self, auth_env) -> None:
        account_id = auth_env.add_account(two_factor_secret=SECRET)
        auth_env.codes[SECRET] = "123456"

        outcome = auth_env.attempt(otp="654321")
        assert _failed(outcome, FailureReason.INVALID_CREDENTIALS)
        assert outcome.stage is LoginStage.SECOND_FACTOR_CHECK
        assert auth_env.store.inner.get_by_id(account_id).failed_attempts == 1
        assert auth_env.sink.types() == ["AUTH_2FA_FAILURE"]

    def test_wrong_codes_reach_lockout(self, auth_env) -> None:
        auth_env.add_account(two_factor_secret=SECRET)
        auth_env.codes[SECRET] = "123456"
        for _ in range(5):
            auth_env.attempt(otp="000000")
        assert _failed(auth_env.attempt(otp="123456"), FailureReason.ACCOUNT_LOCKED)


class TestIPGate:
    def test_blocked_ip_short_circuits_before_store(self, auth_env) -> None:
        auth_env.add_account()
        auth_env.block_list.block(IP, auth_env.clock() + timedelta(minutes=10))
        auth_env.store.calls.clear()

        outcome = auth_env.attempt(ip=IP)
        assert _failed(outcome, FailureReason.IP_BLOCKED)
        assert outcome.stage is LoginStage.IP_CHECK
        assert sum(auth_env.store.calls.values()) == 0
        assert auth_env.scorer.calls == []
        assert auth_env.sink.types() == ["IP_BLOCKED"]

    def test_other_ips_unaffected(self, auth_env) -> None:
        auth_env.add_account()
        auth_env.block_list.block(IP, auth_env.clock() + timedelta(minutes=10))
        assert isinstance(auth_env.attempt(ip="198.51.100.20"), LoginSuccess)

    def test_block_expires(self, auth_env) -> None:
        auth_env.add_account()
        auth_env.block_list.block(IP, auth_env.clock() + timedelta(minutes=10))
        auth_env.clock.advance(minutes=10, seconds=1)
        assert isinstance(auth_env.attempt(ip=IP), LoginSuccess)

    def test_critical_risk_on_unknown_email_blocks_valid_login(self, auth_env) -> None:
        auth_env.add_account()
        auth_env.scorer.push(96, ["IP_BRUTE_FORCE"])

        outcome = auth_env.attempt("nobody@example.com", password="guess", ip=IP)
        assert _failed(outcome, FailureReason.INVALID_CREDENTIALS)

        expires = auth_env.block_list.expires_at(IP)
        assert expires is not None
        assert expires - auth_env.clock() >= timedelta(minutes=30)

        assert _failed(auth_env.attempt(ip=IP), FailureReason.IP_BLOCKED)

    def test_high_risk_failure_blocks_for_high_duration(self, auth_env) -> None:
        auth_env.add_account()
        auth_env.scorer.push(85, ["CREDENTIAL_STUFFING"])
        auth_env.attempt(password="wrong", ip=IP)

        assert auth_env.block_list.expires_at(IP) == auth_env.clock() + timedelta(minutes=15)
        assert auth_env.sink.types() == ["IP_AUTO_BLOCKED", "AUTH_LOGIN_FAILURE"]
        assert auth_env.sink.events[0].severity is EventSeverity.HIGH

    def test_medium_risk_failure_does_not_block(self, auth_env) -> None:
        auth_env.add_account()
        auth_env.scorer.push(60)
        auth_env.attempt(password="wrong", ip=IP)
        assert auth_env.block_list.expires_at(IP) is None

    def test_risky_success_warns_but_is_not_blocked(self, auth_env) -> None:
        auth_env.add_account()
        auth_env.scorer.push(96, ["NEW_IP_LOGIN"])

        outcome = auth_env.attempt(ip=IP)
        assert isinstance(outcome, LoginSuccess)
        assert outcome.risk.level is RiskLevel.CRITICAL
        assert auth_env.block_list.expires_at(IP) is None
        assert auth_env.sink.types() == ["AUTH_LOGIN_SUCCESS", "AUTH_LOGIN_ANOMALY"]


class TestAccountStates:
    def test_unknown_email_is_invalid_credentials(self, auth_env) -> None:
        outcome = auth_env.attempt("ghost@example.com")
        assert _failed(outcome, FailureReason.INVALID_CREDENTIALS)
        assert outcome.stage is LoginStage.ACCOUNT_LOOKUP
        # Unknown emails are still scored, attributed to no account.
        assert auth_env.scorer.calls == [(None, "203.0.113.7", False)]

    def test_identifier_is_case_insensitive(self, auth_env) -> None:
        auth_env.add_account()
        assert isinstance(auth_env.attempt("  Ana@Example.COM "), LoginSuccess)

    def test_account_without_password_is_invalid_credentials(self, auth_env) -> None:
        auth_env.add_account(password_hash=None)
        assert _failed(auth_env.attempt(), FailureReason.INVALID_CREDENTIALS)

    def test_disabled_account_reported_before_password(self, auth_env) -> None:
        account_id = auth_env.add_account(is_active=False)
        outcome = auth_env.attempt(password="wrong")
        assert _failed(outcome, FailureReason.ACCOUNT_DISABLED)
        assert auth_env.store.inner.get_by_id(account_id).failed_attempts == 0

    def test_success_builds_principal_from_account(self, auth_env) -> None:
        account_id = auth_env.add_account(role="ADMIN", name="Ana", permission_tickets=["reports:read"])
        outcome = auth_env.attempt()
        assert isinstance(outcome, LoginSuccess)
        assert outcome.principal.user_id == str(account_id)
        assert outcome.principal.role == "ADMIN"
        assert outcome.principal.permission_tickets == ["reports:read"]


class TestStoreOutage:
    def test_lookup_failure_is_service_unavailable(self, auth_env, monkeypatch) -> None:
        def boom(identifier):
            raise CredentialStoreError("down")

        monkeypatch.setattr(auth_env.store.inner, "find_by_identifier", boom)
        outcome = auth_env.attempt()
        assert _failed(outcome, FailureReason.SERVICE_UNAVAILABLE)
        assert auth_env.sink.types() == ["AUTH_SERVICE_ERROR"]

    def test_counter_write_failure_is_service_unavailable(self, auth_env, monkeypatch) -> None:
        auth_env.add_account()

        def boom(*args, **kwargs):
            raise CredentialStoreError("down")

        monkeypatch.setattr(auth_env.store.inner, "record_failure", boom)
        assert _failed(auth_env.attempt(password="wrong"), FailureReason.SERVICE_UNAVAILABLE)


class TestEvents:
    def test_one_event_per_plain_failure(self, auth_env) -> None:
        auth_env.add_account()
        auth_env.attempt(password="wrong")
        assert auth_env.sink.types() == ["AUTH_LOGIN_FAILURE"]

    def test_events_mask_email_and_omit_password(self, auth_env) -> None:
        auth_env.add_account()
        auth_env.attempt(password="hunter2-wrong")
        event = auth_env.sink.events[0]
        assert event.subject == "a*a@example.com"
        assert "hunter2-wrong" not in repr(event)
