# busline/infrastructure/payments/razorpay_gateway.py

from decimal import ROUND_HALF_UP, Decimal
import os

import razorpay

from busline.domain.exceptions import ConfigurationError


PROVIDER = "RAZORPAY"


def razorpay_key_id() -> str:
    key_id = os.getenv("RAZORPAY_KEY_ID", "")
    if not key_id:
        raise ConfigurationError("Razorpay key id is not configured")
    return key_id


def razorpay_client() -> razorpay.Client:
    key_id = os.getenv("RAZORPAY_KEY_ID", "")
    key_secret = os.getenv("RAZORPAY_KEY_SECRET", "")
    if not key_id or not key_secret:
        raise ConfigurationError("Razorpay credentials are not configured")
    return razorpay.Client(auth=(key_id, key_secret))


# Currencies without a minor unit; everything else is sent in hundredths.
ZERO_DECIMAL_CURRENCIES = frozenset({"VND", "JPY", "KRW", "CLP", "PYG", "UGX"})


def payment_currency() -> str:
    return os.getenv("PAYMENT_CURRENCY", "VND").upper()


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Gateway amounts are integers in the currency's smallest unit."""
    exponent = 0 if currency in ZERO_DECIMAL_CURRENCIES else 2
    return int((Decimal(amount) * 10**exponent).to_integral_value(rounding=ROUND_HALF_UP))


def signature_is_valid(
    client: razorpay.Client,
    order_id: str,
    payment_id: str,
    signature: str,
) -> bool:
    try:
        client.utility.verify_payment_signature(
            {
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature,
            }
        )
    except razorpay.errors.SignatureVerificationError:
        return False
    return True
