"""
Tests for registration, login and token handling
"""

import jwt
import pytest
from fastapi import HTTPException

from securechat import config
from securechat.auth import create_token, decode_token, make_hash, verify_hash


class TestTokens:
    def test_round_trip(self):
        assert decode_token(create_token("alice")) == "alice"

    def test_foreign_signature(self):
        forged = jwt.encode({"sub": "alice"}, "other-secret", algorithm=config.JWT_ALG)
        with pytest.raises(HTTPException) as exc:
            decode_token(forged)
        assert exc.value.status_code == 401

    def test_missing_subject(self):
        token = jwt.encode({"name": "alice"}, config.JWT_SECRET, algorithm=config.JWT_ALG)
        with pytest.raises(HTTPException):
            decode_token(token)

    def test_password_hash(self):
        hashed = make_hash("correct horse")
        assert verify_hash("correct horse", hashed)
        assert not verify_hash("battery staple", hashed)


class TestAuthRoutes:
    def test_register_then_login(self, client, db):
        r = client.post("/auth/register", json={"username": "erin", "password": "s3cret-pass"})
        assert r.status_code == 201
        assert r.json()["username"] == "erin"
        assert decode_token(r.json()["token"]) == "erin"
        assert db.audit_log.find_one({"action": "REGISTER"})["actor"] == "erin"

        r = client.post("/auth/login", json={"username": "erin", "password": "s3cret-pass"})
        assert r.status_code == 200
        assert decode_token(r.json()["token"]) == "erin"

    def test_register_rejects_duplicates_and_short_passwords(self, client):
        r = client.post("/auth/register", json={"username": "alice", "password": "long-enough"})
        assert r.status_code == 400
        r = client.post("/auth/register", json={"username": "frank", "password": "short"})
        assert r.status_code == 400

    def test_login_with_wrong_password(self, client):
        client.post("/auth/register", json={"username": "erin", "password": "s3cret-pass"})
        r = client.post("/auth/login", json={"username": "erin", "password": "wrong-pass"})
        assert r.status_code == 401
        r = client.post("/auth/login", json={"username": "nobody", "password": "whatever1"})
        assert r.status_code == 401
