from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from .settings import settings
import secrets

security = HTTPBasic()

def require_admin(creds: HTTPBasicCredentials = Depends(security)) -> str:
    ok_user = secrets.compare_digest(creds.username, settings.BASIC_USER)
    ok_pass = secrets.compare_digest(creds.password, settings.BASIC_PASS)
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )
    return creds.username

def require_runner_secret(x_job_runner_secret: Optional[str] = Header(None)) -> None:
    expected = settings.JOB_RUNNER_SECRET
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job runner not configured",
        )
    if not x_job_runner_secret or not secrets.compare_digest(x_job_runner_secret, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid job runner secret")
