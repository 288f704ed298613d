"""Interactive CLI simulator — exercise the issue / verify flow without an API."""

import asyncio

from otp_guard.config import Environment, settings
from otp_guard.database.engine import async_session_factory, init_db
from otp_guard.services.otp_service import OTPService

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
BOLD = "\033[1m"
RESET = "\033[0m"


async def main() -> None:
    print(f"\n{BOLD}{'=' * 52}")
    print("  🔐  OTP Guard — Flow Simulator")
    print(f"{'=' * 52}{RESET}\n")

    if settings.environment is Environment.PRODUCTION:
        print(f"{RED}Refusing to run against a production configuration.{RESET}")
        return

    await init_db()
    service = OTPService.from_settings(settings, async_session_factory)

    print(f"{DIM}Commands: send | verify <code> | cleanup | switch | quit{RESET}")
    print(f"{DIM}Codes are echoed because ENVIRONMENT={settings.environment}{RESET}\n")

    contact = input(f"{YELLOW}Contact (email or +phone): {RESET}").strip() or "a@example.com"
    purpose = input(f"{YELLOW}Purpose [login]: {RESET}").strip() or "login"
    contact_type = "email" if "@" in contact else "phone"
    print(f"{DIM}Simulating {contact_type} {contact} for {purpose}{RESET}\n")

    while True:
        try:
            user_input = input(f"{BLUE}{BOLD}>{RESET} ").strip()
        except (KeyboardInterrupt, EOFError):
            print(f"\n{DIM}Goodbye!{RESET}")
            break

        if not user_input:
            continue
        command, _, argument = user_input.partition(" ")
        command = command.lower()

        if command == "quit":
            print(f"{DIM}Goodbye!{RESET}")
            break

        if command == "switch":
            contact = input(f"{YELLOW}New contact: {RESET}").strip() or contact
            contact_type = "email" if "@" in contact else "phone"
            print(f"{DIM}Switched to {contact}{RESET}\n")
            continue

        if command == "send":
            result = await service.send_code(contact, purpose, contact_type, ip_address="127.0.0.1")
            colour = GREEN if result.success else RED
            print(f"{colour}{BOLD}[{result.status}]{RESET} {result.message}")
            if result.code:
                print(f"{DIM}code: {result.code}{RESET}")
            print()
            continue

        if command == "verify":
            result = await service.verify_code(contact, argument, purpose, contact_type)
            colour = GREEN if result.success else RED
            flag = " (blocked)" if result.should_block else ""
            print(f"{colour}{BOLD}[{result.status}]{RESET} {result.message}{flag}\n")
            continue

        if command == "cleanup":
            report = await service.cleanup_expired()
            print(
                f"{DIM}removed {report.codes_deleted} codes, "
                f"{report.rate_limits_deleted} rate limit rows{RESET}\n"
            )
            continue

        print(f"{RED}Unknown command {command!r}{RESET}\n")


if __name__ == "__main__":
    asyncio.run(main())
