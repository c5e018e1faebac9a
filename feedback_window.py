#!/usr/bin/env python3
"""
Feedback Window

The desktop process the broker launches for one feedback session. It binds the
feedback bridge to the port given in MCP_SERVER_PORT, tells the broker it is
listening, shows the prompt in a tkinter window and answers the single bridge
request with the human's decision. It exits once that answer has been sent.
"""

import logging
import mimetypes
import os
import platform
import queue
import shutil
import sys
import tempfile
import time
import tkinter as tk
from tkinter import filedialog, messagebox
from typing import Callable, Optional

from feedback_bridge import (
    DEFAULT_PROMPT,
    HOST_ENV_VAR,
    PORT_ENV_VAR,
    FeedbackDecision,
    FeedbackDeclined,
    FeedbackRequest,
    RequestBridgeServer,
)
from feedback_config import BrokerConfig, configure_logging

logger = logging.getLogger(__name__)

# Platform detection
CURRENT_PLATFORM = platform.system().lower()
IS_WINDOWS = CURRENT_PLATFORM == 'windows'
IS_MACOS = CURRENT_PLATFORM == 'darwin'
IS_LINUX = CURRENT_PLATFORM == 'linux'

# Temporary copies of attached images; the broker reads them after we answer
IMAGE_DIR = os.path.join(tempfile.gettempdir(), "feedback-app")

APPROVE_TEXT = "APPROVED: I approve this action or information."
ENOUGH_TEXT = "ENOUGH: The information provided is sufficient. No further details needed."
CANCELLED_REASON = "CANCELLED: Operation cancelled by user."
CLOSED_REASON = "CANCELLED: Window was closed without providing feedback."

IMAGE_FILETYPES = [
    ("Images", "*.png *.jpg *.jpeg *.gif *.bmp *.webp"),
    ("All files", "*.*"),
]


def get_system_font():
    """Get appropriate system font for the current platform"""
    if IS_MACOS:
        return ("SF Pro Display", 13)
    elif IS_WINDOWS:
        return ("Segoe UI", 10)
    else:
        return ("Ubuntu", 10)


def get_title_font():
    if IS_MACOS:
        return ("SF Pro Display", 16, "bold")
    elif IS_WINDOWS:
        return ("Segoe UI", 14, "bold")
    else:
        return ("Ubuntu", 14, "bold")


def get_text_font():
    if IS_MACOS:
        return ("Monaco", 12)
    elif IS_WINDOWS:
        return ("Consolas", 11)
    else:
        return ("Ubuntu Mono", 10)


def get_theme_colors():
    """Get theme colors based on platform"""
    accent, hover = {
        "windows": ("#0078D4", "#106EBE"),
        "darwin": ("#007AFF", "#0056CC"),
    }.get(CURRENT_PLATFORM, ("#1976D2", "#1565C0"))
    return {
        "bg_primary": "#FFFFFF",
        "bg_secondary": "#F8F9FA",
        "bg_accent": "#F1F3F4",
        "fg_primary": "#202124",
        "fg_secondary": "#5F6368",
        "accent_color": accent,
        "accent_hover": hover,
        "border_color": "#E8EAED",
        "success_color": "#137333",
        "error_color": "#D93025",
        "selection_bg": "#E3F2FD",
        "selection_fg": "#1565C0",
    }


def style_text_widget(widget, theme_colors, readonly=False):
    try:
        widget.configure(
            bg=theme_colors["bg_accent"] if readonly else theme_colors["bg_primary"],
            fg=theme_colors["fg_primary"],
            selectbackground=theme_colors["selection_bg"],
            selectforeground=theme_colors["selection_fg"],
            relief="solid",
            borderwidth=1,
            highlightthickness=1,
            highlightcolor=theme_colors["accent_color"],
            highlightbackground=theme_colors["border_color"],
            font=get_text_font(),
            wrap="word",
            padx=12,
            pady=8
        )
    except tk.TclError:
        pass  # Some options are not supported on every platform


def create_modern_button(parent, text, command, button_type="primary", theme_colors=None):
    """Create a flat button with a hover color"""
    if theme_colors is None:
        theme_colors = get_theme_colors()

    if button_type == "primary":
        bg_color = theme_colors["accent_color"]
        fg_color = "#FFFFFF"
        hover_color = theme_colors["accent_hover"]
    else:  # secondary
        bg_color = theme_colors["bg_secondary"]
        fg_color = theme_colors["fg_primary"]
        hover_color = theme_colors["bg_accent"]

    button = tk.Button(
        parent,
        text=text,
        command=command,
        bg=bg_color,
        fg=fg_color,
        font=get_system_font(),
        relief="flat",
        borderwidth=0,
        padx=16,
        pady=8,
        cursor="hand2"
    )
    button.bind("<Enter>", lambda e: button.configure(bg=hover_color))
    button.bind("<Leave>", lambda e: button.configure(bg=bg_color))
    return button


def copy_image_for_upload(source_path: str) -> str:
    """Copy an attached image into the temp image dir and return the copy's path"""
    os.makedirs(IMAGE_DIR, exist_ok=True)
    ext = os.path.splitext(source_path)[1].lstrip(".") or "png"
    target = os.path.join(IMAGE_DIR, f"image-{int(time.time() * 1000)}.{ext}")
    shutil.copyfile(source_path, target)
    return target


class FeedbackWindow:
    """One feedback prompt; calls ``on_done`` exactly once with a decision or a decline reason."""

    def __init__(
        self,
        parent,
        request: FeedbackRequest,
        on_done: Callable[[Optional[FeedbackDecision], Optional[str]], None],
        inactivity_seconds: int = 0,
    ):
        self._on_done = on_done
        self._finished = False
        self.image_path: Optional[str] = None
        self.image_type: Optional[str] = None
        self.inactivity_seconds = inactivity_seconds
        self._deadline: Optional[float] = None

        self.theme_colors = get_theme_colors()
        colors = self.theme_colors

        self.dialog = tk.Toplevel(parent)
        self.dialog.title(request.title)
        self.dialog.configure(bg=colors["bg_primary"])
        self.dialog.minsize(650, 500)
        self.dialog.geometry("650x560")
        self.center_window()

        main_frame = tk.Frame(self.dialog, bg=colors["bg_primary"])
        main_frame.pack(fill="both", expand=True, padx=24, pady=20)
        main_frame.columnconfigure(0, weight=1)
        main_frame.rowconfigure(1, weight=1)
        main_frame.rowconfigure(2, weight=1)

        title_label = tk.Label(
            main_frame,
            text=request.title,
            bg=colors["bg_primary"],
            fg=colors["fg_primary"],
            font=get_title_font(),
            anchor="w"
        )
        title_label.grid(row=0, column=0, sticky="ew", pady=(0, 8))

        # Prompt (read-only)
        self.prompt_widget = tk.Text(main_frame, height=8)
        style_text_widget(self.prompt_widget, colors, readonly=True)
        self.prompt_widget.insert("1.0", request.prompt or DEFAULT_PROMPT)
        self.prompt_widget.configure(state="disabled")
        self.prompt_widget.grid(row=1, column=0, sticky="nsew", pady=(0, 12))

        # Feedback input
        self.text_widget = tk.Text(main_frame, height=8)
        style_text_widget(self.text_widget, colors)
        self.text_widget.grid(row=2, column=0, sticky="nsew", pady=(0, 8))

        # Image row
        image_frame = tk.Frame(main_frame, bg=colors["bg_primary"])
        image_frame.grid(row=3, column=0, sticky="ew", pady=(0, 8))
        create_modern_button(
            image_frame, "Attach image…", self.attach_image, "secondary", colors
        ).pack(side=tk.LEFT)
        self.remove_image_button = create_modern_button(
            image_frame, "Remove", self.remove_image, "secondary", colors
        )
        self.image_label = tk.Label(
            image_frame,
            text="No image attached",
            bg=colors["bg_primary"],
            fg=colors["fg_secondary"],
            font=get_system_font(),
            anchor="w"
        )
        self.image_label.pack(side=tk.LEFT, padx=(8, 0))

        # Countdown / hint
        self.status_label = tk.Label(
            main_frame,
            text="Ctrl+Enter to submit  ·  Esc to cancel",
            bg=colors["bg_primary"],
            fg=colors["fg_secondary"],
            font=(get_system_font()[0], get_system_font()[1] - 1),
            anchor="center",
        )
        self.status_label.grid(row=4, column=0, sticky="ew", pady=(0, 12))

        button_frame = tk.Frame(main_frame, bg=colors["bg_primary"])
        button_frame.grid(row=5, column=0, sticky="ew")

        create_modern_button(button_frame, "Submit", self.submit_clicked, "primary", colors).pack(side=tk.RIGHT, padx=(8, 0))
        create_modern_button(button_frame, "Approve", self.approve_clicked, "secondary", colors).pack(side=tk.RIGHT, padx=(8, 0))
        create_modern_button(button_frame, "Enough", self.enough_clicked, "secondary", colors).pack(side=tk.RIGHT, padx=(8, 0))
        create_modern_button(button_frame, "Cancel", self.cancel_clicked, "secondary", colors).pack(side=tk.RIGHT)

        self.dialog.protocol("WM_DELETE_WINDOW", self.close_clicked)
        self.dialog.bind('<Control-Return>', lambda e: self.submit_clicked())
        self.dialog.bind('<Command-Return>' if IS_MACOS else '<Control-KP_Enter>', lambda e: self.submit_clicked())
        self.dialog.bind('<Escape>', lambda e: self.cancel_clicked())
        self.dialog.bind_all('<Key>', self._reset_inactivity, add=True)
        self.dialog.bind_all('<Button>', self._reset_inactivity, add=True)

        self.dialog.attributes('-topmost', True)
        self.dialog.lift()
        self.dialog.focus_force()
        self.text_widget.focus_set()

        if self.inactivity_seconds > 0:
            self._reset_inactivity()
            self._tick()

    def center_window(self):
        """Center the dialog window on screen"""
        self.dialog.update_idletasks()
        width = self.dialog.winfo_width()
        height = self.dialog.winfo_height()
        x = (self.dialog.winfo_screenwidth() // 2) - (width // 2)
        y = max(30, (self.dialog.winfo_screenheight() // 2) - (height // 2) - 30)
        self.dialog.geometry(f"{width}x{height}+{x}+{y}")

    # ── Images ──

    def attach_image(self):
        path = filedialog.askopenfilename(parent=self.dialog, title="Attach image", filetypes=IMAGE_FILETYPES)
        if not path:
            return
        mime_type, _ = mimetypes.guess_type(path)
        if not mime_type or not mime_type.startswith("image/"):
            messagebox.showwarning("Attach image", "Please choose an image file.", parent=self.dialog)
            return
        try:
            copied = copy_image_for_upload(path)
        except OSError as e:
            messagebox.showerror("Attach image", f"Could not attach image: {e}", parent=self.dialog)
            return
        self.remove_image()
        self.image_path = copied
        self.image_type = mime_type
        self.image_label.configure(text=os.path.basename(path))
        self.remove_image_button.pack(side=tk.LEFT, padx=(8, 0), before=self.image_label)

    def remove_image(self):
        if self.image_path and os.path.exists(self.image_path):
            try:
                os.remove(self.image_path)
            except OSError as e:
                logger.warning("Error removing temporary image: %s", e)
        self.image_path = None
        self.image_type = None
        self.image_label.configure(text="No image attached")
        self.remove_image_button.pack_forget()

    # ── Inactivity timer ──

    def _reset_inactivity(self, event=None):
        if self.inactivity_seconds > 0:
            self._deadline = time.monotonic() + self.inactivity_seconds

    def _tick(self):
        if self._finished or self._deadline is None:
            return
        remaining = int(self._deadline - time.monotonic())
        if remaining <= 0:
            self._finish(self._decision(self._typed_text(), auto_submitted=True), None)
            return
        minutes, seconds = divmod(remaining, 60)
        self.status_label.configure(
            text=f"Auto-submitting in {minutes}:{seconds:02d}  ·  Ctrl+Enter to submit  ·  Esc to cancel"
        )
        self.dialog.after(1000, self._tick)

    # ── Decisions ──

    def _typed_text(self) -> str:
        return self.text_widget.get("1.0", tk.END).strip()

    def _decision(self, text: str, auto_submitted: bool = False) -> FeedbackDecision:
        return FeedbackDecision(
            text=text,
            has_image=bool(self.image_path),
            image_path=self.image_path,
            image_type=self.image_type,
            auto_submitted=auto_submitted,
        )

    def submit_clicked(self):
        text = self._typed_text()
        if not text:
            messagebox.showwarning("Feedback", "Please enter feedback before submitting.", parent=self.dialog)
            return
        self._finish(self._decision(text), None)

    def approve_clicked(self):
        self._finish(self._decision(APPROVE_TEXT), None)

    def enough_clicked(self):
        self._finish(self._decision(ENOUGH_TEXT), None)

    def cancel_clicked(self):
        self._finish(None, CANCELLED_REASON)

    def close_clicked(self):
        self._finish(None, CLOSED_REASON)

    def _finish(self, decision: Optional[FeedbackDecision], reason: Optional[str]):
        if self._finished:
            return
        self._finished = True
        if decision is None:
            self.remove_image()
        self.dialog.destroy()
        self._on_done(decision, reason)


class FeedbackApp:
    """Runs the tk main loop and hands the bridge's single request to the UI thread."""

    POLL_MS = 100

    def __init__(self, port: int, host: str = "127.0.0.1", inactivity_seconds: int = 0):
        self.inactivity_seconds = inactivity_seconds
        self._requests: "queue.Queue" = queue.Queue()
        self.bridge = RequestBridgeServer(self.handle_request, port=port, host=host)
        self.root: Optional[tk.Tk] = None

    def handle_request(self, request: FeedbackRequest) -> FeedbackDecision:
        """Runs on the bridge thread; blocks until the window is answered."""
        reply: "queue.Queue" = queue.Queue(maxsize=1)
        self._requests.put((request, reply))
        decision, reason = reply.get()
        if decision is None:
            raise FeedbackDeclined(reason or CANCELLED_REASON)
        return decision

    def _poll(self):
        try:
            request, reply = self._requests.get_nowait()
        except queue.Empty:
            pass
        else:
            FeedbackWindow(
                self.root,
                request,
                lambda decision, reason: reply.put((decision, reason)),
                self.inactivity_seconds,
            )

        if self.bridge.finished:
            # Give the bridge thread a moment to flush the response before exiting.
            self.root.after(300, self.root.quit)
            return
        self.root.after(self.POLL_MS, self._poll)

    def run(self) -> int:
        self.root = tk.Tk()
        self.root.withdraw()
        self.bridge.start()
        self.bridge.announce_ready()
        try:
            self.root.after(self.POLL_MS, self._poll)
            self.root.mainloop()
        finally:
            self.bridge.close()
            self.root.destroy()
        return 0


def main():
    config = BrokerConfig.load()
    configure_logging(config.log_level)

    port_value = os.getenv(PORT_ENV_VAR, "8080")
    try:
        port = int(port_value)
    except ValueError:
        print(f"Invalid {PORT_ENV_VAR}: {port_value}", file=sys.stderr)
        return 2

    app = FeedbackApp(
        port=port,
        host=os.getenv(HOST_ENV_VAR, config.host),
        inactivity_seconds=config.inactivity_seconds,
    )
    return app.run()


if __name__ == "__main__":
    sys.exit(main())
