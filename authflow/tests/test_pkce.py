"""
Tests for the PKCE primitives, session storage and authorization requests.
"""

from urllib.parse import parse_qs, urlparse

import pytest

from authflow.auth.crypto import (
    base64url_decode,
    base64url_encode,
    code_challenge_s256,
    generate_code_verifier,
    random_string,
)
from authflow.auth.pkce import (
    PKCE_STORAGE_KEY,
    AuthorizationRequestBuilder,
    PkceLookup,
    PkceSessionStore,
)
from authflow.auth.storage import SessionStorage
from authflow.errors import ConfigurationError
from authflow.models import PkceRecord
from authflow.tests.fakes import CLIENT_ID, REDIRECT_URI, make_settings


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestCryptoPrimitives:
    """Random strings, hashing and base64url"""

    def test_code_challenge_matches_rfc7636_example(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert code_challenge_s256(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_code_verifier_is_128_hex_chars(self):
        verifier = generate_code_verifier()
        assert len(verifier) == 128
        assert all(c in "0123456789abcdef" for c in verifier)

    def test_code_verifiers_are_unique(self):
        assert generate_code_verifier() != generate_code_verifier()

    def test_random_string_uses_given_source(self):
        assert random_string(4, lambda n: b"\x01" * n) == "01010101"

    def test_base64url_encode_has_no_padding(self):
        assert base64url_encode(b"\xfb\xff") == "-_8"

    def test_base64url_decode_accepts_missing_padding(self):
        assert base64url_decode("-_8") == b"\xfb\xff"
        assert base64url_decode("-_8=") == b"\xfb\xff"

    def test_base64url_decode_rejects_garbage(self):
        with pytest.raises(ValueError):
            base64url_decode("a")


class TestSessionStorage:
    """Namespaced key/value storage"""

    def test_set_get_delete(self, storage, session_data):
        storage.set("key", {"a": 1})
        assert storage.get("key") == {"a": 1}
        assert "authflow_key" in session_data

        storage.delete("key")
        assert storage.get("key") is None
        assert not storage.contains("key")

    def test_expired_entry_is_removed_on_read(self, storage, session_data, clock):
        storage.set("key", "value", ttl=10)
        clock.advance(11)

        assert storage.get("key", "default") == "default"
        assert "authflow_key" not in session_data

    def test_clear_leaves_foreign_keys(self, storage, session_data):
        session_data["other"] = "kept"
        storage.set("a", 1)
        storage.set("b", 2)

        storage.clear()

        assert session_data == {"other": "kept"}


class TestPkceSessionStore:
    """Pending authorization record lifecycle"""

    def _record(self, created_at, state="state-1"):
        return PkceRecord(
            state=state,
            nonce="nonce-1",
            code_verifier="v" * 64,
            created_at=created_at,
        )

    def test_missing_record(self, storage, clock):
        store = PkceSessionStore(storage, clock=clock)
        assert store.inspect() == (PkceLookup.MISSING, None)
        assert store.get() is None

    def test_found_record(self, storage, clock):
        store = PkceSessionStore(storage, clock=clock)
        store.put(self._record(clock()))

        status, record = store.inspect()
        assert status is PkceLookup.FOUND
        assert record.state == "state-1"
        assert store.get() == record

    def test_expired_record_is_reported_not_returned(self, storage, clock):
        store = PkceSessionStore(storage, max_age=600, clock=clock)
        store.put(self._record(clock()))
        clock.advance(601)

        status, record = store.inspect()
        assert status is PkceLookup.EXPIRED
        assert record.state == "state-1"
        assert store.get() is None

    def test_put_overwrites_pending_record(self, storage, clock):
        store = PkceSessionStore(storage, clock=clock)
        store.put(self._record(clock(), state="first"))
        store.put(self._record(clock(), state="second"))

        assert store.get().state == "second"

    def test_unreadable_record_is_discarded(self, storage, clock):
        storage.set(PKCE_STORAGE_KEY, {"state": "only-state"})
        store = PkceSessionStore(storage, clock=clock)

        assert store.inspect() == (PkceLookup.MISSING, None)
        assert storage.get(PKCE_STORAGE_KEY) is None


class TestAuthorizationRequestBuilder:
    """Authorization URL construction"""

    def _builder(self, storage, clock, **overrides):
        store = PkceSessionStore(storage, clock=clock)
        return AuthorizationRequestBuilder(make_settings(**overrides), store, clock=clock), store

    def test_record_is_stored_before_url_is_returned(self, storage, clock):
        builder, store = self._builder(storage, clock)

        request, record = builder.begin()

        stored = store.get()
        assert stored == record
        assert stored.state == request.state
        assert request.code_challenge == code_challenge_s256(stored.code_verifier)

    def test_url_carries_pkce_parameters(self, storage, clock):
        builder, store = self._builder(storage, clock)
        request, record = builder.begin("openid profile email")

        url = builder.build_url(request)
        params = _query(url)

        assert url.startswith("https://idp.example.test/trustedx-authserver/oauth/main-as?")
        assert params["response_type"] == "code"
        assert params["client_id"] == CLIENT_ID
        assert params["redirect_uri"] == REDIRECT_URI
        assert params["scope"] == "openid profile email"
        assert params["state"] == record.state
        assert params["nonce"] == record.nonce
        assert params["code_challenge_method"] == "S256"
        assert params["code_challenge"] == code_challenge_s256(record.code_verifier)
        assert params["prompt"] == "login"

    def test_nonce_only_for_openid_scope(self, storage, clock):
        builder, _ = self._builder(storage, clock)

        request, record = builder.begin("profile email")

        assert record.nonce is None
        assert "nonce" not in _query(builder.build_url(request))

    def test_consecutive_attempts_use_fresh_values(self, storage, clock):
        builder, _ = self._builder(storage, clock)

        _, first = builder.begin("openid")
        _, second = builder.begin("openid")

        assert first.state != second.state
        assert first.nonce != second.nonce
        assert first.code_verifier != second.code_verifier

    def test_state_and_nonce_have_256_bits(self, storage, clock):
        builder, _ = self._builder(storage, clock)
        _, record = builder.begin("openid")

        assert len(record.state) == 64
        assert len(record.nonce) == 64
        assert record.state != record.nonce

    def test_existing_state_and_nonce_are_reused(self, storage, clock):
        builder, _ = self._builder(storage, clock)

        request, record = builder.begin("openid", existing_state="given-state", existing_nonce="given-nonce")

        assert record.state == request.state == "given-state"
        assert record.nonce == request.nonce == "given-nonce"

    def test_default_scope_comes_from_settings(self, storage, clock):
        builder, _ = self._builder(storage, clock, OIDC_SCOPE="openid+profile")

        request, _ = builder.begin()

        assert request.scope == "openid profile"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"OIDC_CLIENT_ID": ""},
            {"OIDC_REDIRECT_URI": ""},
            {"OIDC_REDIRECT_URI": "not-a-url"},
            {"OIDC_BASE_URL": "ftp://idp.example.test"},
        ],
    )
    def test_invalid_configuration_fails_at_construction(self, overrides, clock):
        store = PkceSessionStore(SessionStorage({}), clock=clock)

        with pytest.raises(ConfigurationError):
            AuthorizationRequestBuilder(make_settings(**overrides), store)
