from datetime import timedelta

import jwt

from app.features.auth.utils.security import create_access_token
from app.platform.config import settings


def test_valid_token_resolves_user(client, user_id):
    token = create_access_token({"sub": user_id})

    response = client.get("/api/v1/credits", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["data"]["user_id"] == user_id


def test_expired_token_rejected(client, user_id):
    token = create_access_token({"sub": user_id}, expires_delta=timedelta(minutes=-5))

    response = client.get("/api/v1/credits", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["message"] == "Token has expired"


def test_token_without_subject_rejected(client):
    token = create_access_token({"role": "user"})

    response = client.get("/api/v1/credits", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_token_signed_with_other_key_rejected(client, user_id):
    token = jwt.encode({"sub": user_id}, "not-the-secret", algorithm=settings.ALGORITHM)

    response = client.get("/api/v1/credits", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid token"
