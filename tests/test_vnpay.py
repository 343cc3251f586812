import random
from datetime import datetime, timezone
from urllib.parse import parse_qsl, urlsplit

from storefront import vnpay

from conftest import VNPAY_HASH_SECRET, vnpay_params


class TestCanonicalQuery:
    def test_sorted_by_key(self):
        assert vnpay.canonical_query({"vnp_b": "2", "vnp_a": "1"}) == "vnp_a=1&vnp_b=2"

    def test_hash_fields_excluded(self):
        query = vnpay.canonical_query({"vnp_a": "1", "vnp_SecureHash": "abc", "vnp_SecureHashType": "HmacSHA512"})
        assert query == "vnp_a=1"

    def test_values_form_encoded(self):
        query = vnpay.canonical_query({"vnp_OrderInfo": "Thanh toan don hang #42", "vnp_ReturnUrl": "http://x/y?z=1"})
        assert query == "vnp_OrderInfo=Thanh+toan+don+hang+%2342&vnp_ReturnUrl=http%3A%2F%2Fx%2Fy%3Fz%3D1"


class TestSignature:
    def test_parameter_order_does_not_change_signature(self):
        params = vnpay_params("665f1c2e8a1b2c3d4e5f6a7b", 250000)
        keys = list(params)
        expected = vnpay.sign(params, VNPAY_HASH_SECRET)

        rng = random.Random(7)
        for _ in range(20):
            rng.shuffle(keys)
            shuffled = {key: params[key] for key in keys}
            assert vnpay.sign(shuffled, VNPAY_HASH_SECRET) == expected

    def test_valid_callback_verifies(self):
        params = vnpay_params("665f1c2e8a1b2c3d4e5f6a7b", 250000)
        assert vnpay.verify_callback(params, VNPAY_HASH_SECRET)

    def test_uppercase_hash_accepted(self):
        params = vnpay_params("665f1c2e8a1b2c3d4e5f6a7b", 250000)
        params["vnp_SecureHash"] = params["vnp_SecureHash"].upper()
        assert vnpay.verify_callback(params, VNPAY_HASH_SECRET)

    def test_any_tampered_value_fails(self):
        params = vnpay_params("665f1c2e8a1b2c3d4e5f6a7b", 250000)
        for key in params:
            if key == "vnp_SecureHash":
                continue
            tampered = dict(params)
            value = tampered[key]
            tampered[key] = value[:-1] + ("0" if value[-1] != "0" else "1")
            assert not vnpay.verify_callback(tampered, VNPAY_HASH_SECRET), key

    def test_added_parameter_fails(self):
        params = vnpay_params("665f1c2e8a1b2c3d4e5f6a7b", 250000)
        params["vnp_Extra"] = "1"
        assert not vnpay.verify_callback(params, VNPAY_HASH_SECRET)

    def test_wrong_secret_fails(self):
        params = vnpay_params("665f1c2e8a1b2c3d4e5f6a7b", 250000, secret="OTHERSECRET")
        assert not vnpay.verify_callback(params, VNPAY_HASH_SECRET)

    def test_missing_hash_fails(self):
        params = vnpay_params("665f1c2e8a1b2c3d4e5f6a7b", 250000)
        del params["vnp_SecureHash"]
        assert not vnpay.verify_callback(params, VNPAY_HASH_SECRET)


class TestPaymentUrl:
    def test_url_is_signed_and_complete(self, settings):
        now = datetime(2026, 10, 17, 8, 30, 0, tzinfo=timezone.utc)
        url = vnpay.build_payment_url(
            settings,
            order_id="665f1c2e8a1b2c3d4e5f6a7b",
            amount=250000,
            client_ip="203.0.113.9",
            bank_code="NCB",
            now=now,
        )

        parts = urlsplit(url)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == settings.vnpay_url

        params = dict(parse_qsl(parts.query))
        assert params["vnp_Amount"] == "25000000"
        assert params["vnp_TxnRef"] == "665f1c2e8a1b2c3d4e5f6a7b"
        assert params["vnp_TmnCode"] == "TESTTMN1"
        assert params["vnp_CurrCode"] == "VND"
        assert params["vnp_BankCode"] == "NCB"
        assert params["vnp_IpAddr"] == "203.0.113.9"
        # 08:30 UTC is 15:30 in Vietnam
        assert params["vnp_CreateDate"] == "20261017153000"
        assert params["vnp_ExpireDate"] == "20261017154500"
        assert vnpay.verify_callback(params, settings.vnpay_hash_secret)

    def test_bank_code_omitted_when_not_given(self, settings):
        url = vnpay.build_payment_url(settings, order_id="abc", amount=1000, client_ip="127.0.0.1")
        params = dict(parse_qsl(urlsplit(url).query))
        assert "vnp_BankCode" not in params
        assert params["vnp_Locale"] == settings.vnpay_locale
