from datetime import timedelta

import pytest
from jose import jwt

from clinic_chat.config import get_settings
from clinic_chat.constants import Role
from clinic_chat.errors import AuthError, NotFoundError
from clinic_chat.security import bearer_from_header, create_access_token, decode_token


class TestTokens:
    def test_access_token_round_trip(self):
        token = create_access_token({"sub": "abc", "role": "doctor"})

        payload = decode_token(token)

        assert payload["sub"] == "abc"
        assert payload["type"] == "access"

    def test_expired_token(self):
        token = create_access_token({"sub": "abc"}, expires_delta=timedelta(seconds=-1))

        with pytest.raises(AuthError):
            decode_token(token)

    def test_wrong_signature(self):
        settings = get_settings()
        forged = jwt.encode({"sub": "abc", "type": "access"}, "another-secret", algorithm=settings.JWT_ALGORITHM)

        with pytest.raises(AuthError):
            decode_token(forged)

    def test_refresh_token_is_not_an_access_token(self):
        settings = get_settings()
        refresh = jwt.encode({"sub": "abc", "type": "refresh"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

        with pytest.raises(AuthError, match="token type"):
            decode_token(refresh)

    @pytest.mark.parametrize(
        "header, expected",
        [
            ("Bearer abc.def", "abc.def"),
            ("Bearer ", None),
            ("Basic abc", None),
            ("", None),
            (None, None),
        ],
    )
    def test_bearer_from_header(self, header, expected):
        assert bearer_from_header(header) == expected


class TestJWTIdentityProvider:
    async def test_resolves_identity(self, identity_provider, patient, issue_token):
        identity = await identity_provider.resolve_identity(issue_token(patient))

        assert identity == patient

    async def test_rejects_missing_or_garbage_credentials(self, identity_provider, db):
        with pytest.raises(AuthError):
            await identity_provider.resolve_identity("")
        with pytest.raises(AuthError):
            await identity_provider.resolve_identity("not-a-jwt")

    async def test_rejects_unknown_user(self, identity_provider, db):
        token = create_access_token({"sub": "65a0c0ffee0000000000beef", "role": "patient"})

        with pytest.raises(AuthError, match="User not found"):
            await identity_provider.resolve_identity(token)

    async def test_rejects_inactive_user(self, identity_provider, make_user, issue_token):
        suspended = await make_user(Role.PATIENT, "Suspended", is_active=False)

        with pytest.raises(AuthError):
            await identity_provider.resolve_identity(issue_token(suspended))

    async def test_rejects_role_mismatch(self, identity_provider, patient):
        token = create_access_token({"sub": patient.user_id, "role": "doctor"})

        with pytest.raises(AuthError, match="role"):
            await identity_provider.resolve_identity(token)

    async def test_rejects_token_without_subject(self, identity_provider, db):
        with pytest.raises(AuthError):
            await identity_provider.resolve_identity(create_access_token({"role": "patient"}))

    async def test_lookup_user(self, identity_provider, doctor, patient):
        profile = await identity_provider.lookup_user(doctor.user_id, Role.DOCTOR)
        assert profile.display_name == "Hassan Kareem"

        with pytest.raises(NotFoundError, match="Doctor not found"):
            await identity_provider.lookup_user(patient.user_id, Role.DOCTOR)

    async def test_list_doctors(self, identity_provider, make_user, patient):
        await make_user(Role.DOCTOR, "Zaid Hameed")
        await make_user(Role.DOCTOR, "Ali Naji")
        await make_user(Role.DOCTOR, "Kamal Off", is_active=False)

        doctors = await identity_provider.list_doctors()

        assert [d.display_name for d in doctors] == ["Ali Naji", "Zaid Hameed"]
        assert patient.user_id not in {d.user_id for d in doctors}
