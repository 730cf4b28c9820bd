"""
Webhook signature verification
"""
import hashlib
import hmac

from common.security import compute_signature, verify_signature

SECRET = "sk_test_9f2c1a7e"
BODY = b'{"event":"charge.success","data":{"reference":"ORD-981152373","amount":1700}}'

class TestSignature:
    """HMAC-SHA512 over the raw body"""

    def test_compute_matches_hmac_sha512(self):
        assert compute_signature(BODY, SECRET) == hmac.new(SECRET.encode(), BODY, hashlib.sha512).hexdigest()

    def test_valid_signature_accepted(self):
        assert verify_signature(BODY, compute_signature(BODY, SECRET), SECRET)

    def test_uppercase_hex_accepted(self):
        assert verify_signature(BODY, compute_signature(BODY, SECRET).upper(), SECRET)

    def test_tampered_amount_rejected(self):
        signature = compute_signature(BODY, SECRET)
        tampered = BODY.replace(b"1700", b"100")
        assert not verify_signature(tampered, signature, SECRET)

    def test_reserialized_body_rejected(self):
        # same JSON content, different bytes
        signature = compute_signature(BODY, SECRET)
        assert not verify_signature(BODY.replace(b",", b", "), signature, SECRET)

    def test_wrong_secret_rejected(self):
        assert not verify_signature(BODY, compute_signature(BODY, "sk_other"), SECRET)

    def test_missing_signature_rejected(self):
        assert not verify_signature(BODY, None, SECRET)
        assert not verify_signature(BODY, "", SECRET)

    def test_unconfigured_secret_rejects_everything(self):
        assert not verify_signature(BODY, compute_signature(BODY, ""), "")

    def test_non_ascii_signature_rejected(self):
        assert not verify_signature(BODY, "é" * 128, SECRET)
