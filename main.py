"""Application entrypoint: tray icon that toggles Deepgram dictation."""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from typing import Any, Coroutine

from config import JsonConfigStore, get_config_dir, load_env
from deepgram_auth import DeepgramAuthManager
from deepgram_client import DeepgramClient
from error_log import VoiceErrorLogger
from logging_config import setup_logging
from models import VoiceError, VoiceStatus
from overlay import OverlayWindow, color_hex
from recorder import SoundDeviceRecorder
from voice_session import VoiceSession
from voice_status import VoiceStatusMachine

try:
    from PySide6.QtCore import QObject, QSize, Signal
    from PySide6.QtGui import QAction, QBrush, QColor, QIcon, QPainter, QPixmap
    from PySide6.QtWidgets import (
        QApplication,
        QFileDialog,
        QInputDialog,
        QLineEdit,
        QMenu,
        QMessageBox,
        QSystemTrayIcon,
    )
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"PySide6 is required to run the desktop app: {exc}")

logger = logging.getLogger(__name__)

_IDLE_STATUSES = (VoiceStatus.READY, VoiceStatus.COMPLETE)


def _create_icon(color: str = "#4B5563", size: int = 22) -> QIcon:
    """Generate a simple circular tray icon with the given color."""
    pixmap = QPixmap(QSize(size, size))
    pixmap.fill(QColor(0, 0, 0, 0))
    painter = QPainter(pixmap)
    painter.setRenderHint(QPainter.Antialiasing, True)
    painter.setBrush(QBrush(QColor(color)))
    painter.setPen(QColor(color))
    painter.drawEllipse(2, 2, size - 4, size - 4)
    painter.end()
    return QIcon(pixmap)


class UIBridge(QObject):
    partial_signal = Signal(str)
    final_signal = Signal(str)
    error_signal = Signal(str)
    status_signal = Signal(str, str, str, str)  # status, message, color, icon


class App:
    def __init__(self, verbose: bool = False) -> None:
        setup_logging(verbose)
        load_env()
        self.app = QApplication(sys.argv)
        self.app.setQuitOnLastWindowClosed(False)
        self.config_store = JsonConfigStore()
        self.overlay = OverlayWindow()
        self.ui = UIBridge()
        self.ui.partial_signal.connect(self._on_partial_ui)
        self.ui.final_signal.connect(self._on_final_ui)
        self.ui.error_signal.connect(self._on_error_ui)
        self.ui.status_signal.connect(self._on_status_ui)

        self.loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(
            target=self.loop.run_forever, name="voice-loop", daemon=True
        )
        self._loop_thread.start()

        self.auth = DeepgramAuthManager(
            supabase_url=self.config_store.get("supabase_url"),
            anon_key=self.config_store.get("supabase_anon_key"),
            access_token=self.config_store.get("supabase_access_token") or None,
            fallback_api_key=self.config_store.get_api_key() or None,
            dev_mode=bool(self.config_store.get("dev_mode")),
        )
        self.status = VoiceStatusMachine(
            **self.config_store.status_options(),
            on_status_change=self._on_status_change,
            on_error=self._on_error,
            on_timeout=self._on_timeout,
            on_offline_mode=self._on_offline_mode,
        )
        self.client = DeepgramClient(self.auth, self.config_store.session_config())
        self.error_log = VoiceErrorLogger(path=get_config_dir() / "voice_error_logs.json")
        self.error_log.load_persisted_logs()
        self.session = VoiceSession(
            self.client,
            self.status,
            SoundDeviceRecorder(),
            on_partial=self._on_partial,
            on_final=self._on_final,
            error_log=self.error_log,
        )

        self.tray = QSystemTrayIcon()
        self.tray.setIcon(_create_icon(color_hex(self.status.status_color())))
        self.tray.setToolTip(f"Kitchen Voice - {self.status.status_message()}")
        self.tray.activated.connect(self._on_tray_activated)
        self._setup_menu()
        self.tray.show()

    def _setup_menu(self) -> None:
        menu = QMenu()

        self.toggle_action = QAction("Start Dictation", menu)
        self.toggle_action.triggered.connect(self.toggle_dictation)
        menu.addAction(self.toggle_action)

        retry_action = QAction("Retry", menu)
        retry_action.triggered.connect(lambda: self.loop.call_soon_threadsafe(self.session.retry))
        menu.addAction(retry_action)

        offline_action = QAction("Work Offline", menu)
        offline_action.triggered.connect(
            lambda: self.loop.call_soon_threadsafe(self.status.force_offline)
        )
        menu.addAction(offline_action)

        online_action = QAction("Go Online", menu)
        online_action.triggered.connect(
            lambda: self.loop.call_soon_threadsafe(self.session.go_online)
        )
        menu.addAction(online_action)

        menu.addSeparator()
        api_action = QAction("Set Deepgram API Key", menu)
        api_action.triggered.connect(self._set_api_key)
        menu.addAction(api_action)

        export_action = QAction("Export Error Log", menu)
        export_action.triggered.connect(self._export_error_log)
        menu.addAction(export_action)

        menu.addSeparator()
        quit_action = QAction("Quit", menu)
        quit_action.triggered.connect(self.quit)
        menu.addAction(quit_action)

        self.tray.setContextMenu(menu)

    def _set_api_key(self) -> None:
        value, ok = QInputDialog.getText(
            None, "API Key", "Deepgram API Key", QLineEdit.EchoMode.Password
        )
        if not ok:
            return
        self.config_store.set_api_key(value)
        QMessageBox.information(None, "Saved", "API Key saved. Restart app to apply.")

    def _export_error_log(self) -> None:
        path, _ = QFileDialog.getSaveFileName(
            None, "Export Error Log", "voice_errors.json", "JSON (*.json)"
        )
        if not path:
            return
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(self.error_log.export_logs())

    # ------------------------------------------------------------------
    # Dictation control (UI thread -> voice loop)
    # ------------------------------------------------------------------

    def _submit(self, coro: Coroutine[Any, Any, Any]) -> None:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future: Any) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error("Voice task failed", exc_info=future.exception())

    def _on_tray_activated(self, reason: QSystemTrayIcon.ActivationReason) -> None:
        if reason == QSystemTrayIcon.ActivationReason.Trigger:
            self.toggle_dictation()

    def toggle_dictation(self) -> None:
        if self.session.is_active:
            self._submit(self.session.stop())
        else:
            self._submit(self.session.start())

    # ------------------------------------------------------------------
    # Callbacks (called on the voice loop thread -> emit signals for UI thread)
    # ------------------------------------------------------------------

    def _on_status_change(self, status: VoiceStatus) -> None:
        self.ui.status_signal.emit(
            status.value,
            self.status.status_message(),
            self.status.status_color(),
            self.status.status_icon(),
        )

    def _on_partial(self, text: str) -> None:
        self.ui.partial_signal.emit(text)

    def _on_final(self, text: str) -> None:
        self.ui.final_signal.emit(text)

    def _on_error(self, error: VoiceError) -> None:
        self.ui.error_signal.emit(error.message)

    def _on_timeout(self) -> None:
        self.session.handle_timeout()

    def _on_offline_mode(self) -> None:
        logger.info("Offline mode enabled; dictation requests will be queued")

    # ------------------------------------------------------------------
    # UI thread handlers (safe for Qt)
    # ------------------------------------------------------------------

    def _on_status_ui(self, status: str, message: str, color: str, icon: str) -> None:
        self.tray.setIcon(_create_icon(color_hex(color)))
        self.tray.setToolTip(f"Kitchen Voice - {message}")
        active = status in (VoiceStatus.CONNECTING.value, VoiceStatus.CONNECTED.value, VoiceStatus.LISTENING.value)
        self.toggle_action.setText("Stop Dictation" if active else "Start Dictation")
        self.overlay.set_status(message, color, icon)
        if status == VoiceStatus.CONNECTING.value:
            self.overlay.clear_text()
        if VoiceStatus(status) in _IDLE_STATUSES:
            self.overlay.hide_with_delay(1500)

    def _on_partial_ui(self, text: str) -> None:
        self.overlay.set_text(text)

    def _on_final_ui(self, text: str) -> None:
        if not text:
            return
        QApplication.clipboard().setText(text)
        self.tray.showMessage("Kitchen Voice", "Transcript copied to clipboard")

    def _on_error_ui(self, message: str) -> None:
        self.overlay.show_error(message)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> int:
        return self.app.exec()

    def quit(self) -> None:
        future = asyncio.run_coroutine_threadsafe(self._shutdown(), self.loop)
        try:
            future.result(timeout=5.0)
        except Exception:
            logger.exception("Error during shutdown")
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.app.quit()

    async def _shutdown(self) -> None:
        await self.session.close()
        await self.auth.aclose()


def main() -> int:
    verbose = "-v" in sys.argv or "--verbose" in sys.argv
    app = App(verbose=verbose)
    return app.run()


if __name__ == "__main__":
    raise SystemExit(main())
