"""Store, verify, or rotate the encrypted credential bundle.

Reads MASTER_KEY, CREDENTIALS_PATH and CREDENTIALS_SALT from the environment
(or `.env`), prompts for secrets without echoing them, and never prints them.
"""

import argparse
import getpass
import sys

from pydantic import SecretStr

from cardrelay.common.config import CommonSettings
from cardrelay.services.secrets.store import CredentialBundle, SecretStore, ServiceLogin

SERVICES = ("retailer", "platform", "mailbox")


def _prompt_login(name: str, existing: ServiceLogin | None) -> ServiceLogin | None:
    default = existing.login if existing else ""
    login = input(f"{name} login [{default}]: ").strip() or default
    if not login:
        return existing
    password = getpass.getpass(f"{name} password (blank keeps current): ")
    if not password and existing is None:
        print(f"{name}: password required", file=sys.stderr)
        return None
    totp_secret = getpass.getpass(f"{name} TOTP seed (optional, blank keeps current): ").strip()
    return ServiceLogin(
        login=login,
        password=SecretStr(password) if password else existing.password,
        totp_secret=SecretStr(totp_secret) if totp_secret else (existing.totp_secret if existing else None),
    )


def cmd_set(store: SecretStore) -> int:
    current = store.get() or CredentialBundle()
    updates = {name: _prompt_login(name, getattr(current, name)) for name in SERVICES}
    store.set(CredentialBundle(**updates))
    configured = [name for name, login in updates.items() if login is not None]
    print(f"Saved credentials for: {', '.join(configured) or 'nothing'}")
    return 0


def cmd_verify(store: SecretStore) -> int:
    candidate = getpass.getpass("Master key to verify: ")
    ok = store.verify(candidate)
    print("Master key is valid." if ok else "Master key does NOT unlock the credential file.")
    return 0 if ok else 1


def cmd_rotate(store: SecretStore) -> int:
    new_key = getpass.getpass("New master key: ")
    if len(new_key) < 16:
        print("New master key must be at least 16 characters.", file=sys.stderr)
        return 2
    if new_key != getpass.getpass("Repeat new master key: "):
        print("Keys do not match.", file=sys.stderr)
        return 2
    store.rotate(new_key)
    print("Credentials re-encrypted. Update MASTER_KEY before restarting the service.")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Manage the encrypted credential bundle.")
    parser.add_argument("command", choices=["set", "verify", "rotate"])
    args = parser.parse_args()

    settings = CommonSettings()
    master = settings.master_key.get_secret_value() if settings.master_key else None
    if master is None and args.command != "verify":
        print("MASTER_KEY is not set.", file=sys.stderr)
        raise SystemExit(2)
    store = SecretStore(settings.credentials_path, master, settings.credentials_salt)
    handler = {"set": cmd_set, "verify": cmd_verify, "rotate": cmd_rotate}[args.command]
    raise SystemExit(handler(store))


if __name__ == "__main__":
    main()
