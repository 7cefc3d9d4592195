from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.auth.claims import parse_apple_profile
from app.auth.verifiers import (
    AppleTokenVerifier,
    GoogleTokenVerifier,
    get_apple_verifier,
    get_google_verifier,
)
from app.core.config import settings
from app.core.database import get_db
from app.schemas.social_auth import AppleAuthIn, ErrorOut, GoogleAuthIn, SocialAuthOut, UserOut
from app.services.social_login import SocialLoginResult, social_login

router = APIRouter(prefix="/auth", tags=["auth", "social"])

ERROR_RESPONSES = {
    401: {"model": ErrorOut, "description": "Identity token rejected"},
    403: {"model": ErrorOut, "description": "Account disabled"},
    409: {"model": ErrorOut, "description": "Email belongs to another account"},
    503: {"model": ErrorOut, "description": "Provider keys or storage temporarily unavailable"},
}


def _auth_response(result: SocialLoginResult) -> SocialAuthOut:
    fields: dict = {"access": result.tokens.access, "refresh": result.tokens.refresh}
    # Unset fields are dropped from the response, so `user` is absent when disabled.
    if settings.SOCIAL_AUTH_INCLUDE_USER:
        fields["user"] = UserOut.from_user(result.user)
    return SocialAuthOut(**fields)


@router.post(
    "/google/",
    response_model=SocialAuthOut,
    response_model_exclude_unset=True,
    responses=ERROR_RESPONSES,
)
def google_sign_in(
    payload: GoogleAuthIn,
    db: Session = Depends(get_db),
    verifier: GoogleTokenVerifier = Depends(get_google_verifier),
):
    result = social_login(db, verifier, payload.id_token)
    return _auth_response(result)


@router.post(
    "/apple/",
    response_model=SocialAuthOut,
    response_model_exclude_unset=True,
    responses=ERROR_RESPONSES,
)
def apple_sign_in(
    payload: AppleAuthIn,
    db: Session = Depends(get_db),
    verifier: AppleTokenVerifier = Depends(get_apple_verifier),
):
    profile = parse_apple_profile(payload.user.model_dump(exclude_none=True) if payload.user else None)
    result = social_login(db, verifier, payload.identity_token, profile)
    return _auth_response(result)
