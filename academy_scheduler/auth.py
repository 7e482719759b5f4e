import json
import logging
import os

import firebase_admin
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth, credentials

logger = logging.getLogger(__name__)

security = HTTPBearer()


def init_firebase() -> bool:
    """
    Initializes Firebase with the same service account used for Sheets
    (GCP_CREDENTIALS_JSON), falling back to Application Default Credentials.
    A failure is logged and the API still starts; protected routes answer 503.
    """
    if firebase_admin._apps:
        return True

    creds_json = os.environ.get('GCP_CREDENTIALS_JSON')
    try:
        if creds_json:
            cred = credentials.Certificate(json.loads(creds_json))
            firebase_admin.initialize_app(cred)
            logger.info("Firebase initialized from GCP_CREDENTIALS_JSON")
        else:
            logger.warning("GCP_CREDENTIALS_JSON not set, trying Application Default Credentials")
            firebase_admin.initialize_app(credentials.ApplicationDefault())
    except (ValueError, OSError):
        logger.exception("Firebase initialization failed; authenticated routes are unavailable")
        return False
    return True


def get_current_user(creds: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """Verifies the Firebase ID token sent by the frontend and returns its uid."""
    if not firebase_admin._apps:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable",
        )
    try:
        decoded_token = auth.verify_id_token(creds.credentials)
    except (auth.InvalidIdTokenError, auth.CertificateFetchError, ValueError) as e:
        logger.info("Rejected token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decoded_token['uid']
