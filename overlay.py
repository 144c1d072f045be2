"""Floating overlay showing the voice status and live transcript."""

from __future__ import annotations

try:
    from PySide6.QtCore import Qt, QTimer
    from PySide6.QtWidgets import QApplication, QLabel, QVBoxLayout, QWidget
except Exception:  # pragma: no cover
    Qt = None  # type: ignore
    QTimer = None  # type: ignore
    QApplication = None  # type: ignore
    QLabel = object  # type: ignore
    QWidget = object  # type: ignore
    QVBoxLayout = object  # type: ignore


# Status colour classes -> hex.
STATUS_COLORS = {
    "text-green-600": "#16A34A",
    "text-blue-600": "#2563EB",
    "text-red-600": "#DC2626",
    "text-gray-600": "#4B5563",
    "text-yellow-600": "#CA8A04",
}

STATUS_GLYPHS = {
    "mic": "\U0001F399",
    "clock": "⏳",
    "check-circle": "✅",
    "refresh-cw": "\U0001F504",
    "x-circle": "❌",
    "mic-off": "\U0001F507",
    "wifi-off": "\U0001F4F4",
}

_PANEL_STYLE = (
    "font-size: 18px; padding: 16px; background: rgba(0,0,0,190); border-radius: 12px;"
)


def color_hex(color_class: str) -> str:
    return STATUS_COLORS.get(color_class, STATUS_COLORS["text-gray-600"])


class OverlayWindow(QWidget):
    def __init__(self) -> None:
        if Qt is None:
            raise RuntimeError("PySide6 is not installed")
        super().__init__()
        self.setWindowFlags(Qt.WindowStaysOnTopHint | Qt.FramelessWindowHint | Qt.Tool)
        self.setAttribute(Qt.WA_TranslucentBackground, True)
        self.setFixedWidth(600)

        self._status_label = QLabel("")
        self._text_label = QLabel("")
        self._text_label.setWordWrap(True)
        self._text_label.setStyleSheet("color: white;" + _PANEL_STYLE)
        self._status_label.setStyleSheet("color: white;" + _PANEL_STYLE)

        layout = QVBoxLayout()
        layout.setContentsMargins(0, 0, 0, 0)
        layout.setSpacing(6)
        layout.addWidget(self._status_label)
        layout.addWidget(self._text_label)
        self.setLayout(layout)

        self._hide_timer: QTimer | None = None

    def _center_top(self) -> None:
        if QApplication is None:
            return
        screen = QApplication.primaryScreen()
        if screen is None:
            return
        geom = screen.availableGeometry()
        self.adjustSize()
        x = geom.x() + (geom.width() - self.width()) // 2
        y = geom.y() + 40
        self.move(x, y)

    def set_status(self, message: str, color_class: str, icon: str) -> None:
        """Show the status line, e.g. ``("Listening for speech...", "text-blue-600", "mic")``."""
        self._cancel_hide_timer()
        glyph = STATUS_GLYPHS.get(icon, "")
        self._status_label.setText(f"{glyph} {message}".strip())
        self._status_label.setStyleSheet(f"color: {color_hex(color_class)};" + _PANEL_STYLE)
        self._center_top()
        self.show()

    def set_text(self, text: str) -> None:
        self._cancel_hide_timer()
        self._text_label.setText(text)
        self._text_label.setVisible(bool(text))
        self._center_top()
        self.show()

    def clear_text(self) -> None:
        self._text_label.setText("")
        self._text_label.setVisible(False)

    def hide_with_delay(self, delay_ms: int = 400) -> None:
        self._cancel_hide_timer()
        if QTimer is not None:
            self._hide_timer = QTimer()
            self._hide_timer.setSingleShot(True)
            self._hide_timer.timeout.connect(self.hide)
            self._hide_timer.start(delay_ms)

    def show_error(self, text: str, hide_after_ms: int = 4000) -> None:
        self.set_status(text, "text-red-600", "x-circle")
        self.hide_with_delay(hide_after_ms)

    def _cancel_hide_timer(self) -> None:
        if self._hide_timer is not None:
            self._hide_timer.stop()
            self._hide_timer = None
