"""
Daemon Service - Wires the keystore, state, session, validation, approval
and both transports together.

Request flow (both transports):
    decode -> ValidationRequest -> ValidationPipeline -> approval (unlock,
    sign, connect) -> Keystore -> response on the originating transport

Everything runs on one asyncio loop. scrypt work goes to a small thread
pool, approval prompts to their own thread, and an asyncio.Lock keeps
keystore operations from interleaving across connections.
"""

import asyncio
import functools
import logging
import signal
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from models.config import DaemonConfig
from models.events import Event, KeystoreEvent, SessionEvent
from models.request import ValidationRequest
from transport.ipc import IPCConnection, IPCMessage, IPCMessageType, IPCServer
from transport.native import GENERAL_ERROR_CODE, NativeMessagingChannel
from utils import now_ms
from wallet.errors import Corrupt, CryptoError, InvalidPassword, KeystoreError, NoKeystore
from wallet.keystore import Keystore
from wallet.watcher import KeystoreWatcher
from .approval import ApprovalGate, ApprovalService, UserRejectedError
from .broadcaster import Broadcaster, BroadcastError
from .permissions import OriginPermissions
from .session import SessionManager
from .state import DaemonState, DaemonStateManager
from .validation import ValidationError, ValidationPipeline

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

METHOD_NOT_FOUND_CODE = -32601

# Keystore failures that indicate a broken daemon rather than a bad request
FAULT_ERRORS = (Corrupt, CryptoError, OSError)


class DaemonService:
    """The wallet daemon."""

    def __init__(self, config: DaemonConfig, approval_gate: ApprovalGate,
                 broadcaster: Optional[Broadcaster] = None,
                 keystore: Optional[Keystore] = None):
        self.config = config
        self.started_at = now_ms()

        self.state = DaemonStateManager(max_errors=config.max_errors)
        self.keystore = keystore or Keystore(config.keystore_dir)
        self.session = SessionManager(
            auto_lock_enabled=config.auto_lock_enabled,
            auto_lock_timeout_ms=config.auto_lock_timeout_ms,
            idle_lock_timeout_ms=config.idle_lock_timeout_ms,
        )
        self.permissions: Optional[OriginPermissions] = None
        if config.require_origin_permission:
            self.permissions = OriginPermissions(Path(config.data_dir) / "permissions.json")
        self.pipeline = ValidationPipeline(self.state, self.keystore, self.permissions)
        self.approvals = ApprovalService(approval_gate, timeout=config.approval_timeout_s)
        self.broadcaster = broadcaster
        self.watcher = KeystoreWatcher(self.keystore, mode=config.watch_mode,
                                       interval=config.watch_interval_s)

        self.executor = ThreadPoolExecutor(max_workers=config.kdf_workers, thread_name_prefix="kdf")
        self.ipc_server: Optional[IPCServer] = None
        self.native: Optional[NativeMessagingChannel] = None

        self._keystore_lock = asyncio.Lock()
        self._shutdown_event = asyncio.Event()
        self._stopped = False

        self._ipc_handlers = {
            IPCMessageType.GET_STATUS.value: self._ipc_get_status,
            IPCMessageType.UNLOCK_KEYSTORE.value: self._ipc_unlock,
            IPCMessageType.LOCK_KEYSTORE.value: self._ipc_lock,
            IPCMessageType.SHUTDOWN.value: self._ipc_shutdown,
            IPCMessageType.GET_ACCOUNTS.value: self._ipc_get_accounts,
            IPCMessageType.CREATE_ACCOUNT.value: self._ipc_create_account,
            IPCMessageType.HIDE_ACCOUNT.value: self._ipc_hide_account,
            IPCMessageType.SHOW_ACCOUNT.value: self._ipc_show_account,
            IPCMessageType.SET_ACCOUNT_LABEL.value: self._ipc_set_account_label,
        }
        self._native_handlers = {
            "eth_requestAccounts": self._eth_request_accounts,
            "eth_accounts": self._eth_accounts,
            "personal_sign": self._sign_message,
            "eth_sign": self._sign_message,
            "eth_signTransaction": self._eth_sign_transaction,
            "eth_sendTransaction": self._eth_send_transaction,
            "wallet_getStatus": self._wallet_get_status,
            "ping": self._ping,
        }

        self.keystore.events.connect(self._on_keystore_event)
        self.session.events.connect(self._on_session_event)

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self) -> None:
        """Load the keystore, start watching and serving IPC."""
        logger.info("Starting wallet daemon...")

        try:
            self.keystore.init()
        except FAULT_ERRORS as e:
            logger.error(f"Failed to load keystore: {e}")
            self.state.handle_error(e, {"phase": "startup"})

        await self.watcher.start()

        self.ipc_server = IPCServer(self.config.socket_path, self.handle_ipc_message)
        await self.ipc_server.start()

        self._sync_state()
        logger.info("Wallet daemon started")

    async def run(self, native: bool = False) -> None:
        """Start, serve until shutdown is requested, then stop."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        native_task = None
        try:
            await self.start()
            if native:
                logger.info("Running in native messaging mode")
                self.native = NativeMessagingChannel(
                    self.handle_native_message,
                    on_connect=self.session.add_session,
                    on_disconnect=self.session.remove_session,
                    on_error=lambda e: logger.warning(f"Native messaging error: {e}"),
                )
                native_task = asyncio.create_task(self.native.run())
            else:
                logger.info(f"Running in background mode, IPC socket: {self.config.socket_path}")

            await self._shutdown_event.wait()
        finally:
            if native_task is not None:
                native_task.cancel()
                try:
                    await native_task
                except asyncio.CancelledError:
                    pass
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.stop()

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Lock the wallet and release every resource."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Shutting down wallet daemon...")

        self.keystore.lock()
        self.session.destroy()
        await self.watcher.stop()
        if self.ipc_server is not None:
            await self.ipc_server.stop()
        self.approvals.shutdown()
        self.executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Wallet daemon shutdown complete")

    # ============================================
    # State
    # ============================================

    def _target_state(self) -> DaemonState:
        if not self.keystore.has_keystore():
            return DaemonState.READY
        if self.keystore.is_locked:
            return DaemonState.LOCKED
        return DaemonState.UNLOCKED

    def _next_step(self, current: DaemonState, target: DaemonState) -> DaemonState:
        if current in (DaemonState.STARTING, DaemonState.ERROR):
            return DaemonState.READY
        if target == DaemonState.READY:
            return DaemonState.READY
        if current == DaemonState.READY:
            return DaemonState.LOCKED
        return target

    def _sync_state(self) -> None:
        """Walk the state machine to match the keystore through legal edges."""
        target = self._target_state()
        metadata = {"hasKeystore": self.keystore.has_keystore()}
        if target == DaemonState.UNLOCKED:
            metadata["accounts"] = self.keystore.get_accounts()

        for _ in range(len(DaemonState)):
            current = self.state.current_state
            if current == target:
                return
            if not self.state.transition(self._next_step(current, target), metadata):
                return

    def _on_keystore_event(self, event: Event) -> None:
        if event.kind == KeystoreEvent.UNLOCKED:
            self.session.unlock(event.data.get("accounts", []))
        elif event.kind == KeystoreEvent.LOCKED:
            self.session.lock()
        elif event.kind == KeystoreEvent.CHANGED:
            self.session.update_accounts(self.keystore.get_accounts())
        elif event.kind == KeystoreEvent.ERROR:
            self.state.handle_error(event.data.get("error"), {"component": "keystore"})
            return
        self._sync_state()

    def _on_session_event(self, event: Event) -> None:
        if event.kind == SessionEvent.AUTO_LOCK:
            logger.info("Auto-locking wallet")
            self.keystore.lock()

    def _record_fault(self, error: BaseException, component: str) -> None:
        if isinstance(error, FAULT_ERRORS):
            self.state.handle_error(error, {"component": component})

    def get_status(self) -> dict:
        return {
            **self.state.get_status(),
            **self.session.get_status(),
            "hasKeystore": self.keystore.has_keystore(),
            "keystoreCount": self.keystore.count_keystore_files(),
            "uptime": now_ms() - self.started_at,
            "version": VERSION,
            "nativeConnected": bool(self.native and self.native.connected),
        }

    # ============================================
    # Keystore operations (serialized)
    # ============================================

    async def _unlock(self, password: str) -> bool:
        async with self._keystore_lock:
            return await self.keystore.unlock_async(password, executor=self.executor)

    async def _in_executor(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(func, *args))

    # ============================================
    # IPC
    # ============================================

    async def handle_ipc_message(self, message: IPCMessage,
                                 connection: Optional[IPCConnection] = None) -> Optional[IPCMessage]:
        """Validate and dispatch one IPC message. Returns the reply, if any."""
        request = ValidationRequest.from_ipc(message.to_dict())
        try:
            self.pipeline.validate(request)
        except ValidationError as e:
            logger.info(f"IPC request {message.type} rejected: {e.code}")
            return message.reply(IPCMessageType.ERROR, e.to_dict())

        handler = self._ipc_handlers.get(message.type)
        if handler is None:
            return message.reply(IPCMessageType.ERROR, {
                "code": "invalid_request",
                "message": f"Unknown IPC message type: {message.type}",
            })

        try:
            return await handler(message)
        except KeystoreError as e:
            self._record_fault(e, "keystore")
            return message.reply(IPCMessageType.ERROR, {"code": e.code, "message": e.message})
        except OSError as e:
            logger.error(f"Keystore I/O failed for {message.type}: {e}")
            self._record_fault(e, "keystore")
            return message.reply(IPCMessageType.ERROR,
                                 {"code": "io_error", "message": "Keystore storage error"})
        except Exception as e:
            logger.exception(f"Unexpected error handling IPC message {message.type}")
            self.state.handle_error(e, {"component": "ipc", "type": message.type})
            return message.reply(IPCMessageType.ERROR,
                                 {"code": "internal_error", "message": "Internal error"})

    async def _ipc_get_status(self, message: IPCMessage) -> IPCMessage:
        return message.reply(IPCMessageType.STATUS_RESPONSE, self.get_status())

    async def _ipc_unlock(self, message: IPCMessage) -> IPCMessage:
        try:
            success = await self._unlock(message.data["password"])
        except KeystoreError as e:
            self._record_fault(e, "keystore")
            return message.reply(IPCMessageType.UNLOCK_RESPONSE,
                                 {"success": False, "code": e.code, "error": e.message})

        if not success:
            logger.info("Unlock failed: invalid password")
            return message.reply(IPCMessageType.UNLOCK_RESPONSE,
                                 {"success": False, "code": "invalid_password",
                                  "error": "Invalid password"})
        return message.reply(IPCMessageType.UNLOCK_RESPONSE,
                             {"success": True, "accounts": self.keystore.get_accounts()})

    async def _ipc_lock(self, message: IPCMessage) -> None:
        self.keystore.lock()
        self.session.lock()

    async def _ipc_shutdown(self, message: IPCMessage) -> None:
        self.keystore.lock()
        self.request_shutdown()

    async def _ipc_get_accounts(self, message: IPCMessage) -> IPCMessage:
        include_hidden = bool(message.data.get("includeHidden", False))
        return message.reply(IPCMessageType.ACCOUNTS_RESPONSE, {
            "accounts": self.keystore.get_accounts(include_hidden),
            "details": self.keystore.get_all_account_details(include_hidden),
        })

    async def _account_mutation(self, message: IPCMessage, operation, *args) -> IPCMessage:
        try:
            async with self._keystore_lock:
                account = await operation(*args, executor=self.executor)
        except KeystoreError as e:
            self._record_fault(e, "keystore")
            return message.reply(IPCMessageType.ACCOUNT_RESPONSE,
                                 {"success": False, "code": e.code, "error": e.message})
        except ValueError as e:
            return message.reply(IPCMessageType.ACCOUNT_RESPONSE,
                                 {"success": False, "code": "invalid_request", "error": str(e)})
        return message.reply(IPCMessageType.ACCOUNT_RESPONSE, {"success": True, "account": account})

    async def _ipc_create_account(self, message: IPCMessage) -> IPCMessage:
        data = message.data
        return await self._account_mutation(message, self.keystore.create_next_account_async,
                                            data["password"])

    async def _ipc_hide_account(self, message: IPCMessage) -> IPCMessage:
        data = message.data
        return await self._account_mutation(message, self.keystore.hide_account_async,
                                            data["address"], data["password"])

    async def _ipc_show_account(self, message: IPCMessage) -> IPCMessage:
        data = message.data
        return await self._account_mutation(message, self.keystore.show_account_async,
                                            data["address"], data["password"])

    async def _ipc_set_account_label(self, message: IPCMessage) -> IPCMessage:
        data = message.data
        return await self._account_mutation(message, self.keystore.set_account_label_async,
                                            data["address"], data["label"], data["password"])

    # ============================================
    # Native messaging
    # ============================================

    async def handle_native_message(self, message: dict) -> dict:
        """Validate and dispatch one native request. Returns {id, result, error}."""
        request_id = message.get("id")
        request = ValidationRequest.from_native(message)
        self.session.touch()

        try:
            self.pipeline.validate(request)
        except ValidationError as e:
            logger.info(f"Native request {request.type} rejected: {e.code}")
            return _native_error(request_id, GENERAL_ERROR_CODE, f"{e.code}: {e.message}")

        handler = self._native_handlers.get(request.type)
        if handler is None:
            return _native_error(request_id, METHOD_NOT_FOUND_CODE,
                                 f"Method not found: {request.type}")

        try:
            result = await handler(request)
        except UserRejectedError as e:
            return _native_error(request_id, e.code, e.message)
        except KeystoreError as e:
            self._record_fault(e, "keystore")
            return _native_error(request_id, GENERAL_ERROR_CODE, e.message)
        except ValidationError as e:
            return _native_error(request_id, GENERAL_ERROR_CODE, f"{e.code}: {e.message}")
        except BroadcastError as e:
            return _native_error(request_id, GENERAL_ERROR_CODE, str(e))
        except (TypeError, ValueError) as e:
            return _native_error(request_id, GENERAL_ERROR_CODE, f"Invalid request: {e}")
        except OSError as e:
            logger.error(f"Keystore I/O failed for {request.type}: {e}")
            self._record_fault(e, "keystore")
            return _native_error(request_id, GENERAL_ERROR_CODE, "Keystore storage error")
        except Exception as e:
            logger.exception(f"Unexpected error handling {request.type}")
            self.state.handle_error(e, {"component": "native-messaging", "method": request.type})
            return _native_error(request_id, GENERAL_ERROR_CODE, "Internal error")

        return {"id": request_id, "result": result, "error": None}

    async def _eth_request_accounts(self, request: ValidationRequest) -> list[str]:
        if self.keystore.is_locked:
            password = await self.approvals.request_unlock_password()
            if not await self._unlock(password):
                raise InvalidPassword("Invalid password")

        if self.permissions is None or not self.permissions.is_granted(request.origin):
            await self.approvals.approve_account_access(request.origin)
            if self.permissions is not None:
                self.permissions.grant(request.origin)

        return self.keystore.get_accounts()

    async def _eth_accounts(self, request: ValidationRequest) -> list[str]:
        return self.keystore.get_accounts()

    async def _sign_message(self, request: ValidationRequest) -> str:
        data = request.data
        await self.approvals.approve_message({
            "address": data["address"],
            "message": data["message"],
            "origin": request.origin,
            "method": request.type,
        })
        return self.keystore.sign_message(data["message"], data["address"])

    def _sender(self, request: ValidationRequest) -> str:
        address = request.data.get("address")
        if address:
            return address
        accounts = self.keystore.get_accounts()
        if not accounts:
            raise NoKeystore("No account available to sign with")
        return accounts[0]

    async def _approved_signature(self, request: ValidationRequest) -> str:
        tx = request.data["transaction"]
        if not isinstance(tx, dict):
            raise ValueError("transaction must be an object")
        sender = self._sender(request)
        tx = {**tx, "from": sender}

        if self.broadcaster is not None:
            tx = await self._in_executor(self.broadcaster.complete_transaction, tx, sender)

        await self.approvals.approve_transaction(tx)
        return self.keystore.sign_transaction(tx, sender)

    async def _eth_sign_transaction(self, request: ValidationRequest) -> str:
        return await self._approved_signature(request)

    async def _eth_send_transaction(self, request: ValidationRequest) -> str:
        if self.broadcaster is None:
            raise BroadcastError("No RPC endpoint configured")
        raw_tx = await self._approved_signature(request)
        return await self._in_executor(self.broadcaster.send_raw_transaction, raw_tx)

    async def _wallet_get_status(self, request: ValidationRequest) -> dict:
        return self.get_status()

    async def _ping(self, request: ValidationRequest) -> str:
        return "pong"


def _native_error(request_id, code: int, message: str) -> dict:
    return {"id": request_id, "result": None, "error": {"code": code, "message": message}}
