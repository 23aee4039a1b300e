import logging

from fastapi import APIRouter, Depends, Response, status
from prometheus_client import Counter
from sqlalchemy.orm import Session

from notes_shared import (
    ChallengeBackend,
    IssueResult,
    IssueStatus,
    OTPDeliveryError,
    OTPStoreError,
    VerifyResult,
    mask_email,
    normalize_email,
)

from ..auth import clear_session_cookie, create_access_token, get_current_user, set_session_cookie
from ..database import get_db
from ..errors import (
    ChallengeExhausted,
    ChallengeExpired,
    ChallengeInvalid,
    Conflict,
    Forbidden,
    InternalError,
    NotFound,
    Unauthorized,
    UpstreamProviderFailure,
    ValidationFailed,
)
from ..federated import FederatedTokenError, GoogleTokenVerifier, get_federated_verifier
from ..models import User
from ..schemas import (
    GoogleSigninIn,
    MeOut,
    MessageOut,
    SessionOut,
    SigninIn,
    SigninOut,
    SignupIn,
    SignupOut,
    UserOut,
    VerifyOtpIn,
)
from ..utils.otp import get_challenge_backend


router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("notes.auth")

OTP_VERIFICATIONS = Counter("notes_otp_verifications_total", "OTP verification outcomes", ["purpose", "result"])
OTP_ISSUED = Counter("notes_otp_issued_total", "OTP issuance outcomes", ["purpose", "status"])


def _find_user(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == normalize_email(email)).one_or_none()


def _raise_for_result(result: VerifyResult) -> None:
    if result == VerifyResult.SUCCESS:
        return
    if result in (VerifyResult.NOT_FOUND, VerifyResult.EXPIRED):
        raise ChallengeExpired()
    if result == VerifyResult.TOO_MANY_ATTEMPTS:
        raise ChallengeExhausted()
    if result == VerifyResult.INVALID_CODE:
        raise ChallengeInvalid()
    raise UpstreamProviderFailure("Failed to verify OTP")


def _verify(backend: ChallengeBackend, email: str, code: str, purpose: str) -> None:
    try:
        result = backend.verify(email, code)
    except OTPStoreError as exc:
        logger.error("Challenge store failure verifying %s: %s", mask_email(email), exc)
        raise InternalError() from exc
    OTP_VERIFICATIONS.labels(purpose, result.value).inc()
    _raise_for_result(result)


def _dev_fields(result: IssueResult) -> dict:
    # Only set when the challenge config exposes codes.
    if not result.code:
        return {}
    return {"dev_code": result.code, "expires_at": result.expires_at}


def _session(user: User, response: Response, message: str) -> SessionOut:
    token = create_access_token(str(user.id), user.email)
    set_session_cookie(response, token)
    return SessionOut(message=message, user=UserOut.model_validate(user), access_token=token)


@router.post("/signup", response_model=SignupOut, response_model_exclude_none=True, status_code=status.HTTP_201_CREATED)
def signup(
    payload: SignupIn,
    db: Session = Depends(get_db),
    backend: ChallengeBackend = Depends(get_challenge_backend),
):
    email = normalize_email(payload.email)
    user = _find_user(db, email)
    if user is not None and user.verified:
        raise Conflict("User already exists", code="identity_exists")
    if user is None:
        user = User(email=email, name=payload.name, dob=payload.dob, verified=False)
        db.add(user)
    else:
        # Registration never completed: restart it with a fresh challenge.
        user.name = payload.name
        user.dob = payload.dob
        logger.info("Re-issuing signup challenge for unverified user id=%s", user.id)
    # The challenge store may use its own connection.
    db.commit()

    try:
        result = backend.issue(email)
    except OTPDeliveryError:
        logger.warning("Signup OTP not issued for %s", mask_email(email))
        OTP_ISSUED.labels("signup", "failed").inc()
        return SignupOut(message="User registered successfully. Please verify your email with OTP.", user_id=str(user.id), otp_sent=False)

    OTP_ISSUED.labels("signup", result.status.value).inc()
    if result.status == IssueStatus.PRE_VERIFIED:
        user.verified = True
        return SignupOut(message="User registered and verified.", user_id=str(user.id), otp_sent=False)
    otp_sent = result.status == IssueStatus.CODE_PENDING and result.delivered
    return SignupOut(
        message="User registered successfully. Please verify your email with OTP.",
        user_id=str(user.id),
        otp_sent=otp_sent,
        **_dev_fields(result),
    )


@router.post("/verify-otp", response_model=MessageOut)
def verify_otp(
    payload: VerifyOtpIn,
    db: Session = Depends(get_db),
    backend: ChallengeBackend = Depends(get_challenge_backend),
):
    user = _find_user(db, payload.email)
    if user is None:
        raise NotFound("User not found", code="unknown_identity")
    _verify(backend, user.email, payload.otp, "signup")
    user.verified = True
    logger.info("Email verified for user id=%s", user.id)
    return MessageOut(message="Email verified successfully")


@router.post("/signin", response_model=SigninOut, response_model_exclude_none=True)
def signin(
    payload: SigninIn,
    response: Response,
    db: Session = Depends(get_db),
    backend: ChallengeBackend = Depends(get_challenge_backend),
):
    user = _find_user(db, payload.email)
    if user is None:
        raise Unauthorized("User not found. Please sign up first.", code="unknown_identity")
    if not user.verified:
        raise Unauthorized("Please verify your email first", code="unverified_identity")

    try:
        result = backend.issue(user.email)
    except OTPDeliveryError as exc:
        OTP_ISSUED.labels("signin", "failed").inc()
        raise InternalError("Failed to send OTP", code="delivery_failed") from exc
    OTP_ISSUED.labels("signin", result.status.value).inc()

    if result.status == IssueStatus.BLOCKED:
        raise Forbidden("Sign-in blocked", code="signin_blocked")
    if result.status == IssueStatus.PRE_VERIFIED:
        session = _session(user, response, "Sign in successful")
        return SigninOut(
            message=session.message,
            email=user.email,
            status=result.status.value,
            access_token=session.access_token,
            token_type=session.token_type,
        )
    if not result.delivered:
        raise InternalError("Failed to send OTP", code="delivery_failed")
    return SigninOut(
        message="OTP sent to your email. Please verify to sign in.",
        email=user.email,
        status=result.status.value,
        **_dev_fields(result),
    )


@router.post("/verify-signin-otp", response_model=SessionOut)
def verify_signin_otp(
    payload: VerifyOtpIn,
    response: Response,
    db: Session = Depends(get_db),
    backend: ChallengeBackend = Depends(get_challenge_backend),
):
    user = _find_user(db, payload.email)
    if user is None:
        raise NotFound("User not found", code="unknown_identity")
    if not user.verified:
        raise Unauthorized("Please verify your email first", code="unverified_identity")
    _verify(backend, user.email, payload.otp, "signin")
    return _session(user, response, "Sign in successful")


@router.post("/google", response_model=SessionOut)
def google_signin(
    payload: GoogleSigninIn,
    response: Response,
    db: Session = Depends(get_db),
    verifier: GoogleTokenVerifier = Depends(get_federated_verifier),
):
    if not verifier.configured:
        raise InternalError("Google sign-in is not configured", code="federation_unconfigured")
    try:
        identity = verifier.verify(payload.id_token)
    except FederatedTokenError as exc:
        raise ValidationFailed(str(exc), code="invalid_federated_token") from exc

    user = db.query(User).filter(User.google_id == identity.subject).one_or_none()
    if user is None:
        user = _find_user(db, identity.email)
    if user is None:
        user = User(
            email=identity.email,
            name=(identity.name or identity.email.split("@")[0])[:128],
            verified=True,
            google_id=identity.subject,
            profile_picture=identity.picture,
        )
        db.add(user)
        db.flush()
        logger.info("Created federated user id=%s", user.id)
    else:
        if not user.google_id:
            user.google_id = identity.subject
            logger.info("Linked Google identity to user id=%s", user.id)
        user.verified = True
        if not user.profile_picture and identity.picture:
            user.profile_picture = identity.picture
        db.flush()
    return _session(user, response, "Sign in successful")


@router.post("/logout", response_model=MessageOut)
def logout(response: Response):
    clear_session_cookie(response)
    return MessageOut(message="Logged out successfully")


@router.get("/me", response_model=MeOut)
def me(user: User = Depends(get_current_user)):
    return MeOut(user=UserOut.model_validate(user))
