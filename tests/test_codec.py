import hashlib
import itertools

import pytest

from tokenkeep.service.codec import (
    EMAIL_VERIFICATION_TOKEN_BYTES,
    REMEMBER_TOKEN_BYTES,
    EntropySourceError,
    SecretCodec,
)


def scripted_source(values):
    """Random source that replays ``values`` byte by byte."""
    stream = iter(values)

    def read(n):
        return bytes(itertools.islice(stream, n))

    return read


class TestNumericCodes:
    def test_codes_are_digits_of_requested_length(self):
        codec = SecretCodec()
        for length in (1, 6, 10):
            code = codec.generate_numeric_code(length)
            assert len(code) == length
            assert code.isdigit()

    def test_leading_zeros_are_kept(self):
        codec = SecretCodec(scripted_source([0, 10, 20, 3, 4, 5]))
        assert codec.generate_numeric_code(6) == "000345"

    def test_bytes_above_cutoff_are_rejected(self):
        # 250..255 would bias digits 0-5, so they are skipped
        codec = SecretCodec(scripted_source([255, 251, 250, 7, 249, 1, 2, 3, 4]))
        assert codec.generate_numeric_code(6) == "791234"

    def test_short_read_raises(self):
        codec = SecretCodec(scripted_source([1, 2]))
        with pytest.raises(EntropySourceError):
            codec.generate_numeric_code(6)

    def test_non_positive_length_rejected(self):
        with pytest.raises(ValueError):
            SecretCodec().generate_numeric_code(0)


class TestOpaqueTokens:
    def test_token_lengths_match_byte_sizes(self):
        codec = SecretCodec()
        assert len(codec.generate_opaque_token(REMEMBER_TOKEN_BYTES)) == 22
        assert len(codec.generate_opaque_token(EMAIL_VERIFICATION_TOKEN_BYTES)) == 43

    def test_tokens_are_url_safe_and_unpadded(self):
        codec = SecretCodec(lambda n: b"\xff" * n)
        token = codec.generate_opaque_token(16)
        assert "=" not in token
        assert "+" not in token and "/" not in token

    def test_tokens_differ_between_calls(self):
        codec = SecretCodec()
        tokens = {codec.generate_opaque_token() for _ in range(50)}
        assert len(tokens) == 50

    def test_short_read_raises(self):
        codec = SecretCodec(lambda n: b"\x00" * (n - 1))
        with pytest.raises(EntropySourceError):
            codec.generate_opaque_token(16)


def test_hash_is_sha256_hex():
    digest = SecretCodec.hash("123456")
    assert digest == hashlib.sha256(b"123456").hexdigest()
    assert len(digest) == 64
    assert SecretCodec.hash("123456") == digest
    assert SecretCodec.hash("123457") != digest
