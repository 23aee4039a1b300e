from .otp import (
    PROVIDER_PLACEHOLDER_CODE,
    Challenge,
    ChallengeBackend,
    ChallengeStore,
    IssueResult,
    IssueStatus,
    LocalChallengeBackend,
    MemoryChallengeStore,
    OTPConfig,
    OTPDeliveryError,
    OTPError,
    OTPStoreError,
    RedisChallengeStore,
    VerifyResult,
    check_challenge_state,
    generate_otp_code,
    issue_challenge,
    record_failure,
    record_success,
    verify_challenge,
)
from .email_provider import EmailSender, build_email_sender
from .rate_limit import SlidingWindowLimiter, RedisRateLimiter
from .env import env_bool, env_float, env_int, env_list
from .email_utils import normalize_email, mask_email

__all__ = [
    "PROVIDER_PLACEHOLDER_CODE",
    "Challenge",
    "ChallengeBackend",
    "ChallengeStore",
    "IssueResult",
    "IssueStatus",
    "LocalChallengeBackend",
    "MemoryChallengeStore",
    "OTPConfig",
    "OTPDeliveryError",
    "OTPError",
    "OTPStoreError",
    "RedisChallengeStore",
    "VerifyResult",
    "check_challenge_state",
    "generate_otp_code",
    "issue_challenge",
    "record_failure",
    "record_success",
    "verify_challenge",
    "EmailSender",
    "build_email_sender",
    "SlidingWindowLimiter",
    "RedisRateLimiter",
    "env_bool",
    "env_float",
    "env_int",
    "env_list",
    "normalize_email",
    "mask_email",
]
