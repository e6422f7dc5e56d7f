"""
twostep - Main Entry Point

Walks through registration, enrollment and the two-step login flow
against an in-memory store, printing each step.
"""

import logging
import time
from typing import Callable, Optional

from .auth.errors import AuthError, InvalidCredentials
from .auth.login import AuthSessionMachine
from .auth.registration import Argon2Verifier, CredentialVerifier, UserRegistration
from .auth.secret import base32_to_secret
from .auth.store import InMemoryCredentialStore
from .auth.totp import TOTPEngine
from .integration.event_logger import EventLogger


def print_header(title, out=print):
    """Print a formatted section header"""
    out("\n" + "=" * 60)
    out(f"  {title}")
    out("=" * 60)


def print_step(step_num, description, out=print):
    """Print a numbered step"""
    out(f"\n  [{step_num}] {description}")


def main(verifier: Optional[CredentialVerifier] = None,
         clock: Callable[[], float] = time.time,
         out=print) -> int:
    """
    Run the walkthrough.

    Returns:
        0 if every step behaved as expected, 1 otherwise
    """
    logging.basicConfig(level=logging.WARNING)

    store = InMemoryCredentialStore()
    engine = TOTPEngine()
    verifier = verifier or Argon2Verifier()
    audit = EventLogger(clock=clock)

    registration = UserRegistration(store, verifier=verifier, engine=engine,
                                    event_logger=audit)
    machine = AuthSessionMachine(store, verifier, engine=engine,
                                 event_logger=audit, clock=clock)

    print_header("PART 1: REGISTRATION", out)
    password = "AliceSecure@2024!"
    enrollment = registration.register_user("alice", password)
    print_step("1.1", "Registered 'alice'", out)
    out(f"  Base32 secret: {enrollment.secret_base32}")
    out(f"  Provisioning URI: {enrollment.provisioning_uri}")

    # Stand-in for the user's authenticator app
    app_secret = base32_to_secret(enrollment.secret_base32)

    print_step("1.2", "Confirming enrollment with a code from the app", out)
    confirmed = registration.confirm_enrollment("alice", engine.code(app_secret, clock()),
                                                clock())
    out(f"  Enrolled: {confirmed}")

    print_header("PART 2: TWO-STEP LOGIN", out)
    print_step("2.1", "Wrong password and unknown user", out)
    failures = []
    for user_id, attempt in (("alice", "wrong-password"), ("bob", "anything")):
        try:
            machine.start_login(user_id, attempt)
        except InvalidCredentials as e:
            failures.append(e.message)
            out(f"  {user_id}: {e.message}")
    same_failure = len(failures) == 2 and failures[0] == failures[1]

    print_step("2.2", "Correct password", out)
    ticket = machine.start_login("alice", password)
    out(f"  Pending ticket expires in {int(ticket.expires_at - ticket.issued_at)}s")

    print_step("2.3", "TOTP code", out)
    try:
        session = machine.complete_mfa(ticket, engine.code(app_secret, clock()))
    except AuthError as e:
        out(f"  MFA failed: {e.message}")
        return 1
    out(f"  State: {machine.state_of(session).value}")

    print_step("2.4", "Logout", out)
    machine.logout(session)
    out(f"  State: {machine.state_of(session).value}")

    print_header("PART 3: AUDIT TRAIL", out)
    for event in audit.get_all_events():
        out(f"  {event}")
    chain_ok = audit.verify_chain()
    out(f"\n  Chain intact: {chain_ok}")

    return 0 if (confirmed and same_failure and chain_ok) else 1


if __name__ == "__main__":
    raise SystemExit(main())
