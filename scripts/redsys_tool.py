"""Sign or verify redirect-gateway payloads from the command line.

Reads the merchant secret from `REDSYS_SECRET_KEY` (or `.env`) so it never
lands in shell history.
"""

import argparse
import json

from bikepay.common.config import Settings
from bikepay.services.payments.redsys_params import (
    PayloadEncoding,
    build_merchant_parameters,
    decode_parameters,
    encode_parameters,
)
from bikepay.services.payments.redsys_signing import SIGNATURE_VERSION, KeyDerivationMode, SignatureEngine
from bikepay.services.payments.service import generate_order_id, parse_notification


def _engine(settings: Settings, encoding: str) -> SignatureEngine:
    if not settings.redsys_secret_key:
        raise SystemExit("REDSYS_SECRET_KEY is not set")
    return SignatureEngine(
        settings.redsys_secret_key,
        encoding=PayloadEncoding(encoding),
        derivation_mode=KeyDerivationMode(settings.redsys_key_derivation),
        merchant_code=settings.redsys_merchant_code,
        terminal=settings.redsys_terminal,
    )


def sign(settings: Settings, args: argparse.Namespace) -> dict:
    """Build and sign one payment request, like the storefront preview."""

    encoding = args.encoding or settings.redsys_outbound_signature_encoding
    params = build_merchant_parameters(
        amount=args.amount,
        order_id=args.order or generate_order_id(),
        merchant_code=settings.redsys_merchant_code or "",
        terminal=settings.redsys_terminal or "001",
        site_base_url=settings.site_base_url or "http://localhost:8000",
        locale=args.locale,
        description=args.description or settings.redsys_product_description,
        notification_path=settings.redsys_notification_path,
        success_path=settings.redsys_success_path,
        failure_path=settings.redsys_failure_path,
    )
    encoded = encode_parameters(params, PayloadEncoding(encoding))
    return {
        "url": settings.redsys_endpoint,
        "merchantParams": params.to_gateway_fields(),
        "Ds_MerchantParameters": encoded,
        "Ds_Signature": _engine(settings, encoding).sign(params.order, encoded),
        "Ds_SignatureVersion": SIGNATURE_VERSION,
    }


def verify(settings: Settings, args: argparse.Namespace) -> dict:
    """Verify a captured notification or return-page parameter pair."""

    encoding = args.encoding or settings.redsys_inbound_signature_encoding
    payload = decode_parameters(args.parameters)
    notification = parse_notification(payload)
    valid = _engine(settings, encoding).verify(notification.order_id, args.parameters, args.signature)
    return {
        "valid": valid,
        "order": notification.order_id,
        "responseCode": notification.response_code,
        "succeeded": notification.succeeded,
        "decodedParams": payload,
    }


def main() -> None:
    """Parse CLI args and print the result as JSON."""

    parser = argparse.ArgumentParser(description="Sign or verify Redsys HMAC_SHA256_V1 payloads.")
    sub = parser.add_subparsers(dest="command", required=True)

    sign_parser = sub.add_parser("sign", help="Build and sign a payment request")
    sign_parser.add_argument("--amount", required=True, help="Amount in euros, e.g. 45.50")
    sign_parser.add_argument("--order", default=None, help="Order id (digits, padded to 12)")
    sign_parser.add_argument("--locale", default="es")
    sign_parser.add_argument("--description", default=None)
    sign_parser.add_argument("--encoding", choices=["standard", "urlsafe"], default=None)

    verify_parser = sub.add_parser("verify", help="Verify a Ds_MerchantParameters/Ds_Signature pair")
    verify_parser.add_argument("--parameters", required=True, help="Ds_MerchantParameters value")
    verify_parser.add_argument("--signature", required=True, help="Ds_Signature value")
    verify_parser.add_argument("--encoding", choices=["standard", "urlsafe"], default=None)
    args = parser.parse_args()

    settings = Settings()
    result = sign(settings, args) if args.command == "sign" else verify(settings, args)
    print(json.dumps(result, indent=2, ensure_ascii=False))
    if args.command == "verify" and not result["valid"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
