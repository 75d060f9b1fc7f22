from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from opentelemetry import trace
from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from app.auth.crypto import (
    generate_secure_token,
    hash_password,
    hash_token,
    validate_password_strength,
    verify_password,
)
from app.auth.mailer import get_mailer
from app.auth.models import (
    USER_ROLES,
    EmailVerificationToken,
    PasswordResetToken,
    RateLimitHit,
    RefreshToken,
    User,
    as_utc,
    utcnow,
)
from app.auth.schemas import RegisterRequest
from app.auth.tokens import TokenPair, encode_token, verify_refresh_token
from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.database import unit_of_work
from app.core.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from app.metrics import observe_login_attempt, observe_token_issued
from app.services.audit import write_audit_log


logger = logging.getLogger("app.auth")
tracer = trace.get_tracer("app.auth")

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
INVALID_REFRESH_MESSAGE = "Invalid or expired refresh token"
# rate-limit hits older than this are dead for every configured window
RATE_LIMIT_HIT_RETENTION = timedelta(days=1)


@dataclass(slots=True)
class ClientInfo:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(slots=True)
class LoginResult:
    user: User
    tokens: TokenPair


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _weak_password(errors: list[str]) -> ValidationFailedError:
    return ValidationFailedError(
        "Password does not meet requirements",
        code="WEAK_PASSWORD",
        details={"errors": errors},
    )


@dataclass(slots=True)
class AuthService:
    clock: Callable[[], datetime] = field(default=utcnow)

    def get_user(self, session: Session, user_id: uuid.UUID | str) -> User:
        user = session.get(User, _as_uuid(user_id))
        if user is None:
            raise NotFoundError("user not found")
        return user

    def get_user_by_email(self, session: Session, email: str) -> User | None:
        return session.scalar(select(User).where(User.email == normalize_email(email)))

    def list_users(self, session: Session) -> list[User]:
        return list(session.scalars(select(User).order_by(User.created_at.asc(), User.email.asc())).all())

    def register(self, session: Session, dto: RegisterRequest, client: ClientInfo) -> User:
        email = normalize_email(dto.email)
        if self.get_user_by_email(session, email) is not None:
            raise ConflictError("User with this email already exists")

        strength = validate_password_strength(dto.password)
        if not strength.valid:
            raise _weak_password(strength.errors)

        now = self.clock()
        verification_token = generate_secure_token()
        with unit_of_work(session, "User with this email already exists"):
            user = User(
                email=email,
                password_hash=hash_password(dto.password),
                first_name=dto.first_name.strip(),
                last_name=dto.last_name.strip(),
                role="user",
            )
            session.add(user)
            session.flush()
            session.add(
                EmailVerificationToken(
                    user_id=user.id,
                    token_hash=hash_token(verification_token),
                    expires_at=now + timedelta(hours=get_settings().email_verification_ttl_hours),
                )
            )
            write_audit_log(
                session,
                event="user.register",
                user_id=user.id,
                details={"email": email},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        session.refresh(user)

        get_mailer().send(
            to=email,
            subject="Verify your email address",
            body=f"Use this token to verify your email address: {verification_token}",
            template="email_verification",
        )
        logger.info("auth.register", extra={"user_id": str(user.id)})
        return user

    def login(self, session: Session, email: str, password: str, client: ClientInfo) -> LoginResult:
        now = self.clock()
        user = self.get_user_by_email(session, email)
        if user is None:
            self.record_failed_login(session, email, client=client, reason="unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE, code="INVALID_CREDENTIALS")

        if user.is_locked(now):
            retry_after = max(1, math.ceil((as_utc(user.locked_until) - now).total_seconds()))
            observe_login_attempt("locked")
            logger.warning("auth.login_failed", extra={"user_id": str(user.id), "reason": "locked"})
            raise AccountLockedError(
                f"Account is temporarily locked. Try again in {math.ceil(retry_after / 60)} minutes.",
                retry_after=retry_after,
                details={"retry_after": retry_after},
            )

        if user.locked_until is not None:
            # lock has lapsed: the next attempt starts from a clean counter
            with unit_of_work(session):
                session.execute(
                    update(User).where(User.id == user.id).values(failed_login_count=0, locked_until=None)
                )
            session.refresh(user)

        if not user.password_hash or not verify_password(user.password_hash, password):
            reason = "no_password" if not user.password_hash else "bad_password"
            self.record_failed_login(session, email, client=client, reason=reason)
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE, code="INVALID_CREDENTIALS")

        with unit_of_work(session):
            self.reset_failed_logins(session, user, now=now)
            tokens, _ = self.issue_token_pair(session, user, client)
            write_audit_log(
                session,
                event="user.login",
                user_id=user.id,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        session.refresh(user)
        observe_login_attempt("success")
        logger.info("auth.login", extra={"user_id": str(user.id)})
        return LoginResult(user=user, tokens=tokens)

    def record_failed_login(
        self,
        session: Session,
        email: str,
        *,
        client: ClientInfo | None = None,
        reason: str = "bad_password",
    ) -> User | None:
        """Count a failed attempt against the account, locking it once the limit is reached."""
        client = client or ClientInfo()
        settings = get_settings()
        user = self.get_user_by_email(session, email)

        with unit_of_work(session):
            if user is not None:
                session.execute(
                    update(User)
                    .where(User.id == user.id)
                    .values(failed_login_count=User.failed_login_count + 1)
                    .execution_options(synchronize_session=False)
                )
                session.refresh(user)
                if user.failed_login_count >= settings.max_failed_logins and not user.is_locked(self.clock()):
                    user.locked_until = self.clock() + timedelta(minutes=settings.lockout_minutes)
                    write_audit_log(
                        session,
                        event="user.locked",
                        user_id=user.id,
                        details={"failed_login_count": user.failed_login_count},
                        ip_address=client.ip_address,
                        user_agent=client.user_agent,
                    )
                    logger.warning("auth.account_locked", extra={"user_id": str(user.id)})

            write_audit_log(
                session,
                event="user.login_failed",
                user_id=user.id if user is not None else None,
                details={"reason": reason},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )

        observe_login_attempt("failure")
        logger.warning(
            "auth.login_failed",
            extra={"user_id": str(user.id) if user is not None else None, "reason": reason},
        )
        return user

    def reset_failed_logins(self, session: Session, user: User, *, now: datetime | None = None) -> None:
        session.execute(
            update(User)
            .where(User.id == user.id)
            .values(failed_login_count=0, locked_until=None, last_login_at=now or self.clock())
            .execution_options(synchronize_session=False)
        )

    def issue_token_pair(
        self,
        session: Session,
        user: User,
        client: ClientInfo | None = None,
    ) -> tuple[TokenPair, RefreshToken]:
        """Sign a fresh pair and stage the refresh token's record; the caller commits."""
        client = client or ClientInfo()
        now = self.clock()
        claims = {"user_id": str(user.id), "email": user.email, "role": user.role}
        access_token, _ = encode_token(token_type="access", now=now, **claims)
        refresh_token, refresh_expires_at = encode_token(token_type="refresh", now=now, **claims)

        record = RefreshToken(
            user_id=user.id,
            token_hash=hash_token(refresh_token),
            user_agent=client.user_agent,
            ip_address=client.ip_address,
            created_at=now,
            expires_at=refresh_expires_at,
        )
        session.add(record)
        session.flush()

        observe_token_issued("access")
        observe_token_issued("refresh")
        return TokenPair(access_token=access_token, refresh_token=refresh_token), record

    def rotate_refresh_token(self, session: Session, old_token: str, client: ClientInfo) -> TokenPair:
        with tracer.start_as_current_span("auth.rotate_refresh_token") as span:
            correlation_id = get_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)
            payload = verify_refresh_token(old_token)
            if payload is None:
                span.set_attribute("auth.outcome", "invalid_signature")
                raise AuthenticationError(INVALID_REFRESH_MESSAGE, code="INVALID_TOKEN")
            span.set_attribute("user_id", payload.user_id)

            now = self.clock()
            record = session.scalar(
                select(RefreshToken).where(RefreshToken.token_hash == hash_token(old_token)).with_for_update()
            )
            if record is None or str(record.user_id) != payload.user_id:
                session.rollback()
                span.set_attribute("auth.outcome", "unknown")
                raise AuthenticationError(INVALID_REFRESH_MESSAGE, code="INVALID_TOKEN")

            if record.revoked_at is not None:
                if record.replaced_by_id is not None:
                    self._handle_reuse(session, record, client)
                    span.set_attribute("auth.outcome", "reuse_detected")
                else:
                    session.rollback()
                    span.set_attribute("auth.outcome", "revoked")
                raise AuthenticationError(INVALID_REFRESH_MESSAGE, code="INVALID_TOKEN")

            if not record.is_active(now):
                session.rollback()
                span.set_attribute("auth.outcome", "expired")
                raise AuthenticationError(INVALID_REFRESH_MESSAGE, code="INVALID_TOKEN")

            user = session.get(User, record.user_id)
            if user is None:
                session.rollback()
                raise AuthenticationError(INVALID_REFRESH_MESSAGE, code="INVALID_TOKEN")

            with unit_of_work(session):
                tokens, new_record = self.issue_token_pair(session, user, client)
                result = session.execute(
                    update(RefreshToken)
                    .where(RefreshToken.id == record.id, RefreshToken.revoked_at.is_(None))
                    .values(revoked_at=now, replaced_by_id=new_record.id)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise AuthenticationError(INVALID_REFRESH_MESSAGE, code="INVALID_TOKEN")
                write_audit_log(
                    session,
                    event="token.refresh",
                    user_id=user.id,
                    details={"revoked_token_id": str(record.id), "new_token_id": str(new_record.id)},
                    ip_address=client.ip_address,
                    user_agent=client.user_agent,
                )
            span.set_attribute("auth.outcome", "rotated")
            logger.info("auth.token_refreshed", extra={"user_id": str(user.id)})
            return tokens

    def _handle_reuse(self, session: Session, record: RefreshToken, client: ClientInfo) -> None:
        with unit_of_work(session):
            revoked = self.revoke_all_refresh_tokens_for_user(session, record.user_id)
            write_audit_log(
                session,
                event="token.reuse_detected",
                user_id=record.user_id,
                details={"token_id": str(record.id), "revoked_count": revoked},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        logger.warning("auth.refresh_token_reuse", extra={"user_id": str(record.user_id), "reason": "reuse"})

    def revoke_refresh_token(self, session: Session, token: str, *, user_id: uuid.UUID | None = None) -> bool:
        """Stage revocation of one stored refresh token; the caller commits."""
        stmt = update(RefreshToken).where(
            RefreshToken.token_hash == hash_token(token),
            RefreshToken.revoked_at.is_(None),
        )
        if user_id is not None:
            stmt = stmt.where(RefreshToken.user_id == user_id)
        result = session.execute(stmt.values(revoked_at=self.clock()).execution_options(synchronize_session=False))
        return result.rowcount > 0

    def revoke_all_refresh_tokens_for_user(self, session: Session, user_id: uuid.UUID) -> int:
        """Stage revocation of every live refresh token of the user; the caller commits."""
        result = session.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def logout(self, session: Session, user_id: uuid.UUID, refresh_token: str | None, client: ClientInfo) -> None:
        with unit_of_work(session):
            revoked = False
            if refresh_token:
                revoked = self.revoke_refresh_token(session, refresh_token, user_id=user_id)
            write_audit_log(
                session,
                event="user.logout",
                user_id=user_id,
                details={"refresh_token_revoked": revoked},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        logger.info("auth.logout", extra={"user_id": str(user_id)})

    def logout_all(self, session: Session, user_id: uuid.UUID, client: ClientInfo) -> int:
        with unit_of_work(session):
            revoked = self.revoke_all_refresh_tokens_for_user(session, user_id)
            write_audit_log(
                session,
                event="user.logout_all",
                user_id=user_id,
                details={"revoked_count": revoked},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        logger.info("auth.logout_all", extra={"user_id": str(user_id)})
        return revoked

    def change_password(
        self,
        session: Session,
        user_id: uuid.UUID,
        current_password: str,
        new_password: str,
        client: ClientInfo,
    ) -> None:
        user = self.get_user(session, user_id)
        if not verify_password(user.password_hash, current_password):
            raise ValidationFailedError("Current password is incorrect", code="INVALID_CURRENT_PASSWORD")

        strength = validate_password_strength(new_password)
        if not strength.valid:
            raise _weak_password(strength.errors)

        with unit_of_work(session):
            user.password_hash = hash_password(new_password)
            revoked = self.revoke_all_refresh_tokens_for_user(session, user.id)
            write_audit_log(
                session,
                event="user.password_change",
                user_id=user.id,
                details={"revoked_count": revoked},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        logger.info("auth.password_changed", extra={"user_id": str(user.id)})

    def verify_email(self, session: Session, token: str, client: ClientInfo) -> User:
        now = self.clock()
        record = session.scalar(
            select(EmailVerificationToken)
            .where(EmailVerificationToken.token_hash == hash_token(token))
            .with_for_update()
        )
        if record is None or not record.is_redeemable(now):
            session.rollback()
            raise ValidationFailedError("Invalid or expired verification token", code="INVALID_TOKEN")

        with unit_of_work(session):
            consumed = session.execute(
                update(EmailVerificationToken)
                .where(EmailVerificationToken.id == record.id, EmailVerificationToken.used_at.is_(None))
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
            if consumed.rowcount != 1:
                raise ValidationFailedError("Invalid or expired verification token", code="INVALID_TOKEN")
            user = self.get_user(session, record.user_id)
            if user.email_verified_at is None:
                user.email_verified_at = now
            write_audit_log(
                session,
                event="user.email_verified",
                user_id=user.id,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        session.refresh(user)
        logger.info("auth.email_verified", extra={"user_id": str(user.id)})
        return user

    def request_password_reset(self, session: Session, email: str, client: ClientInfo) -> None:
        """Issue a reset token when the account exists; callers answer identically either way."""
        user = self.get_user_by_email(session, email)
        if user is None:
            logger.info("auth.password_reset_requested", extra={"reason": "unknown_email"})
            return

        now = self.clock()
        token = generate_secure_token()
        with unit_of_work(session):
            session.execute(
                update(PasswordResetToken)
                .where(PasswordResetToken.user_id == user.id, PasswordResetToken.used_at.is_(None))
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
            session.add(
                PasswordResetToken(
                    user_id=user.id,
                    token_hash=hash_token(token),
                    expires_at=now + timedelta(minutes=get_settings().password_reset_ttl_minutes),
                )
            )
            write_audit_log(
                session,
                event="user.password_reset_requested",
                user_id=user.id,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )

        get_mailer().send(
            to=user.email,
            subject="Reset your password",
            body=f"Use this token to reset your password: {token}",
            template="password_reset",
        )
        logger.info("auth.password_reset_requested", extra={"user_id": str(user.id)})

    def reset_password(self, session: Session, token: str, new_password: str, client: ClientInfo) -> None:
        now = self.clock()
        record = session.scalar(
            select(PasswordResetToken).where(PasswordResetToken.token_hash == hash_token(token)).with_for_update()
        )
        if record is None or not record.is_redeemable(now):
            session.rollback()
            raise ValidationFailedError("Invalid or expired reset token", code="INVALID_TOKEN")

        strength = validate_password_strength(new_password)
        if not strength.valid:
            session.rollback()
            raise _weak_password(strength.errors)

        with unit_of_work(session):
            consumed = session.execute(
                update(PasswordResetToken)
                .where(PasswordResetToken.id == record.id, PasswordResetToken.used_at.is_(None))
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            )
            if consumed.rowcount != 1:
                raise ValidationFailedError("Invalid or expired reset token", code="INVALID_TOKEN")
            user = self.get_user(session, record.user_id)
            user.password_hash = hash_password(new_password)
            user.failed_login_count = 0
            user.locked_until = None
            revoked = self.revoke_all_refresh_tokens_for_user(session, user.id)
            write_audit_log(
                session,
                event="user.password_reset",
                user_id=user.id,
                details={"revoked_count": revoked},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        logger.info("auth.password_reset", extra={"user_id": str(record.user_id)})

    def update_role(
        self,
        session: Session,
        actor_id: uuid.UUID,
        user_id: uuid.UUID,
        role: str,
        client: ClientInfo,
    ) -> User:
        if role not in USER_ROLES:
            raise ValidationFailedError(f"role must be one of: {', '.join(USER_ROLES)}")
        if actor_id == user_id:
            raise PermissionDeniedError("cannot change your own role")

        user = self.get_user(session, user_id)
        previous = user.role
        with unit_of_work(session):
            user.role = role
            write_audit_log(
                session,
                event="user.role_changed",
                user_id=user.id,
                details={"from": previous, "to": role, "changed_by": str(actor_id)},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        session.refresh(user)
        return user

    def cleanup_expired_tokens(self, session: Session) -> dict[str, int]:
        now = self.clock()
        with unit_of_work(session):
            refresh = session.execute(
                delete(RefreshToken)
                .where(or_(RefreshToken.expires_at < now, RefreshToken.revoked_at < now - timedelta(days=30)))
                .execution_options(synchronize_session=False)
            ).rowcount
            verification = session.execute(
                delete(EmailVerificationToken)
                .where(EmailVerificationToken.expires_at < now)
                .execution_options(synchronize_session=False)
            ).rowcount
            reset = session.execute(
                delete(PasswordResetToken)
                .where(PasswordResetToken.expires_at < now)
                .execution_options(synchronize_session=False)
            ).rowcount
            rate_limit_hits = session.execute(
                delete(RateLimitHit)
                .where(RateLimitHit.created_at < now - RATE_LIMIT_HIT_RETENTION)
                .execution_options(synchronize_session=False)
            ).rowcount

        counts = {
            "refresh_tokens": refresh,
            "email_verification_tokens": verification,
            "password_reset_tokens": reset,
            "rate_limit_hits": rate_limit_hits,
        }
        logger.info("auth.cleanup", extra={"status": counts})
        return counts


def _as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise NotFoundError("user not found") from exc


auth_service = AuthService()
