"""Generate or check a TOTP seed for a site login that uses 2FA."""

import argparse

from cardrelay.services.automation import totp


def main() -> None:
    parser = argparse.ArgumentParser(description="TOTP helper for site automation logins.")
    sub = parser.add_subparsers(dest="command", required=True)

    new = sub.add_parser("new", help="generate a new seed and otpauth URI")
    new.add_argument("--account", required=True)
    new.add_argument("--issuer", default="cardrelay")

    check = sub.add_parser("code", help="print the current code for a seed")
    check.add_argument("--secret", required=True)

    args = parser.parse_args()
    if args.command == "new":
        secret = totp.generate_secret()
        print(f"Seed:  {totp.format_secret(secret)}")
        print(f"URI:   {totp.provisioning_uri(secret, args.account, args.issuer)}")
        print("Store the seed with `python scripts/setup_credentials.py set`.")
    else:
        print(f"{totp.totp(args.secret)} (valid {totp.seconds_remaining()}s)")


if __name__ == "__main__":
    main()
