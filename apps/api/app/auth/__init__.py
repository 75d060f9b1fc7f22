from app.auth.models import EmailVerificationToken, PasswordResetToken, RateLimitHit, RefreshToken, User

__all__ = ["User", "RefreshToken", "EmailVerificationToken", "PasswordResetToken", "RateLimitHit"]
