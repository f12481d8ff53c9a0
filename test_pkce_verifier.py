"""
Tests for PKCE verifier generation and challenge verification (RFC 7636).
"""

import pytest

import pkce_verifier
from pkce_verifier import InvalidParameter, UnsupportedMethod


class TestCodeVerifier:

    def test_default_length_and_charset(self):
        verifier = pkce_verifier.generate_code_verifier()
        assert len(verifier) == 64
        assert set(verifier) <= set(pkce_verifier.VERIFIER_ALPHABET)

    @pytest.mark.parametrize("length", [43, 128])
    def test_boundary_lengths(self, length):
        assert len(pkce_verifier.generate_code_verifier(length)) == length

    @pytest.mark.parametrize("length", [0, 42, 129])
    def test_out_of_range_length_rejected(self, length):
        with pytest.raises(InvalidParameter):
            pkce_verifier.generate_code_verifier(length)

    def test_verifiers_are_random(self):
        assert pkce_verifier.generate_code_verifier() != pkce_verifier.generate_code_verifier()


class TestChallenge:

    def test_rfc7636_appendix_b_vector(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert pkce_verifier.compute_challenge(verifier, "S256") == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_plain_challenge_is_verifier(self):
        verifier = pkce_verifier.generate_code_verifier()
        assert pkce_verifier.compute_challenge(verifier, "plain") == verifier

    def test_unsupported_method(self):
        with pytest.raises(UnsupportedMethod):
            pkce_verifier.compute_challenge("a" * 43, "S512")

    def test_s256_has_no_padding(self):
        challenge = pkce_verifier.compute_challenge(pkce_verifier.generate_code_verifier(), "S256")
        assert "=" not in challenge
        assert len(challenge) == 43


class TestVerifyChallenge:

    def test_valid_pairs_verify(self):
        for _ in range(20):
            verifier = pkce_verifier.generate_code_verifier()
            challenge = pkce_verifier.compute_challenge(verifier, "S256")
            assert pkce_verifier.verify_challenge(verifier, challenge, "S256")

    def test_any_single_character_mutation_fails(self):
        verifier = pkce_verifier.generate_code_verifier(43)
        challenge = pkce_verifier.compute_challenge(verifier, "S256")
        for i, original in enumerate(verifier):
            replacement = "A" if original != "A" else "B"
            mutated = verifier[:i] + replacement + verifier[i + 1:]
            assert not pkce_verifier.verify_challenge(mutated, challenge, "S256")

    def test_plain_method(self):
        verifier = pkce_verifier.generate_code_verifier()
        assert pkce_verifier.verify_challenge(verifier, verifier, "plain")
        assert not pkce_verifier.verify_challenge(verifier, verifier[:-1], "plain")

    def test_length_mismatch_is_false(self):
        assert not pkce_verifier.verify_challenge("a" * 43, "short", "plain")

    def test_unknown_method_is_false(self):
        verifier = pkce_verifier.generate_code_verifier()
        assert not pkce_verifier.verify_challenge(verifier, verifier, "bogus")

    def test_non_ascii_verifier_is_false(self):
        assert not pkce_verifier.verify_challenge("é" * 43, "x" * 43, "S256")


class TestVerifierShape:

    def test_valid(self):
        assert pkce_verifier.validate_verifier_shape(pkce_verifier.generate_code_verifier())

    @pytest.mark.parametrize("verifier", [
        None,
        "",
        "a" * 42,
        "a" * 129,
        "a" * 42 + "!",
        "a" * 43 + "\n",
        "a" * 42 + " ",
    ])
    def test_invalid(self, verifier):
        assert not pkce_verifier.validate_verifier_shape(verifier)
