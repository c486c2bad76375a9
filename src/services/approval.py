"""
Approval - Human confirmation for unlock, signing and connect requests.

ApprovalGate is the blocking interface the daemon needs from a human.
TerminalApprovalGate implements it with prompt_toolkit on the controlling
terminal (not stdin/stdout, which carry native messaging frames).
ApprovalService runs a gate in a worker thread so the event loop keeps
serving other clients while the human decides.
"""

import asyncio
import functools
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Protocol

from eth_utils import from_wei
from prompt_toolkit import PromptSession, print_formatted_text
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.input import create_input
from prompt_toolkit.output import create_output

logger = logging.getLogger(__name__)

USER_REJECTED_CODE = 4001
SEPARATOR = "─" * 50


class UserRejectedError(Exception):
    """The human declined the request (or did not answer in time)."""

    code = USER_REJECTED_CODE

    def __init__(self, message: str = "User rejected the request"):
        super().__init__(message)
        self.message = message


class ApprovalGate(Protocol):
    """Blocking prompts answered by a human."""

    def prompt_unlock(self) -> str: ...

    def prompt_transaction_approval(self, tx: dict) -> bool: ...

    def prompt_message_signature(self, request: dict) -> bool: ...

    def prompt_account_access(self, origin: str) -> bool: ...


# ============================================
# Terminal gate
# ============================================

def _to_int(value) -> Optional[int]:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.startswith("0x") else int(value)
        except ValueError:
            return None
    return None


def _escape(value) -> str:
    return (str(value).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;"))


class TerminalApprovalGate:
    """
    Prompts on the controlling terminal via prompt_toolkit.

    Ctrl-C or end of input counts as a rejection, mirroring a "no" answer.
    """

    def __init__(self, tty_path: str = "/dev/tty"):
        self.tty_path = tty_path
        self._session: Optional[PromptSession] = None
        self._output = None

    def _get_session(self) -> PromptSession:
        if self._session is not None:
            return self._session
        try:
            tty_in = open(self.tty_path, "r")
            tty_out = open(self.tty_path, "w")
        except OSError as e:
            logger.warning(f"No controlling terminal ({e}), prompting on stdin/stderr")
            tty_in, tty_out = sys.stdin, sys.stderr
        self._output = create_output(stdout=tty_out)
        self._session = PromptSession(input=create_input(stdin=tty_in), output=self._output)
        return self._session

    def _show(self, markup: str) -> None:
        self._get_session()
        print_formatted_text(HTML(markup), output=self._output)

    def _confirm(self, message: str, default: bool) -> bool:
        session = self._get_session()
        suffix = " (Y/n) " if default else " (y/N) "
        try:
            while True:
                answer = session.prompt(message + suffix).strip().lower()
                if not answer:
                    return default
                if answer in ("y", "yes"):
                    return True
                if answer in ("n", "no"):
                    return False
        except (KeyboardInterrupt, EOFError):
            return False

    def prompt_unlock(self) -> str:
        self._show("<ansiblue><b>Wallet Unlock Request</b></ansiblue>")
        self._show("<grey>A browser extension is requesting to unlock the wallet</grey>")
        self._show(SEPARATOR)
        try:
            return self._get_session().prompt("Enter wallet password: ", is_password=True)
        except (KeyboardInterrupt, EOFError):
            return ""

    def prompt_transaction_approval(self, tx: dict) -> bool:
        self._show("<ansiyellow><b>Transaction Approval Request</b></ansiyellow>")
        self._show(SEPARATOR)
        self._show(f"<ansiblue>From:     </ansiblue> {_escape(tx.get('from') or 'Unknown')}")
        self._show(f"<ansiblue>To:       </ansiblue> {_escape(tx.get('to') or 'Contract Creation')}")

        value = _to_int(tx.get("value"))
        if value is not None:
            self._show(f"<ansiblue>Value:    </ansiblue> {from_wei(value, 'ether')} ETH")
        gas = _to_int(tx.get("gas", tx.get("gasLimit")))
        if gas is not None:
            self._show(f"<ansiblue>Gas Limit:</ansiblue> {gas}")
        gas_price = _to_int(tx.get("gasPrice"))
        if gas_price is not None:
            self._show(f"<ansiblue>Gas Price:</ansiblue> {from_wei(gas_price, 'gwei')} Gwei")
        data = tx.get("data") or tx.get("input")
        if data and data != "0x":
            self._show(f"<ansiblue>Data:     </ansiblue> {_escape(str(data)[:42])}...")

        self._show(SEPARATOR)
        return self._confirm("Approve this transaction?", default=False)

    def prompt_message_signature(self, request: dict) -> bool:
        self._show("<ansicyan><b>Message Signature Request</b></ansicyan>")
        self._show(SEPARATOR)
        self._show(f"<ansiblue>Account:  </ansiblue> {_escape(request.get('address') or 'Unknown')}")
        self._show("<ansiblue>Message:  </ansiblue>")

        message = request.get("message")
        if isinstance(message, str):
            try:
                message = json.dumps(json.loads(message), indent=2)
            except json.JSONDecodeError:
                pass
        else:
            message = json.dumps(message, indent=2)
        self._show(_escape(message))

        self._show(SEPARATOR)
        return self._confirm("Sign this message?", default=False)

    def prompt_account_access(self, origin: str) -> bool:
        self._show("<ansigreen><b>Account Access Request</b></ansigreen>")
        self._show(SEPARATOR)
        self._show(f"<ansiblue>Website:  </ansiblue> {_escape(origin or 'Unknown')}")
        self._show("<grey>This website wants to connect to your wallet</grey>")
        self._show(SEPARATOR)
        return self._confirm("Allow this website to see your accounts?", default=True)


# ============================================
# Async service
# ============================================

class ApprovalService:
    """
    Runs ApprovalGate prompts off the event loop, one at a time.

    With a timeout, an unanswered prompt is treated as a rejection; the
    prompt itself keeps waiting on the terminal.
    """

    def __init__(self, gate: ApprovalGate, timeout: Optional[float] = None):
        self.gate = gate
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="approval")
        self._lock = asyncio.Lock()

    async def _ask(self, method, *args):
        async with self._lock:
            loop = asyncio.get_running_loop()
            future = loop.run_in_executor(self._executor, functools.partial(method, *args))
            if self.timeout is None:
                return await future
            try:
                return await asyncio.wait_for(future, self.timeout)
            except asyncio.TimeoutError as e:
                logger.warning(f"Approval timed out after {self.timeout}s")
                raise UserRejectedError("Approval timed out") from e

    async def request_unlock_password(self) -> str:
        password = await self._ask(self.gate.prompt_unlock)
        if not password:
            raise UserRejectedError("Unlock cancelled")
        return password

    async def approve_transaction(self, tx: dict) -> None:
        if not await self._ask(self.gate.prompt_transaction_approval, tx):
            logger.info("Transaction rejected by user")
            raise UserRejectedError("User rejected the transaction")

    async def approve_message(self, request: dict) -> None:
        if not await self._ask(self.gate.prompt_message_signature, request):
            logger.info("Message signature rejected by user")
            raise UserRejectedError("User rejected the signature request")

    async def approve_account_access(self, origin: str) -> None:
        if not await self._ask(self.gate.prompt_account_access, origin):
            logger.info(f"Account access rejected for {origin}")
            raise UserRejectedError("User rejected account access")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
