#!/usr/bin/env python3

# SPDX-FileCopyrightText: 2025 Frederic Ruget <fred@atlant.is> (GitHub: @douzebis)
#
# SPDX-License-Identifier: MIT

"""
YubiKey Selection with Interactive Menu and LED Feedback.

Used by the console when several YubiKeys are connected and the terminal is
interactive. Uses prompt_toolkit for arrow-key navigation and flashes the
highlighted YubiKey so the operator can tell the keys apart.
"""

from __future__ import annotations

import logging
import threading
import time

from prompt_toolkit import Application
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout import Layout
from prompt_toolkit.layout.containers import Window
from prompt_toolkit.layout.controls import FormattedTextControl

# PIV AID: A0 00 00 03 08
SELECT_PIV_APDU = bytes([0x00, 0xA4, 0x04, 0x00, 0x05, 0xA0, 0x00, 0x00, 0x03, 0x08])

logger = logging.getLogger(__name__)


def flash_yubikey_continuously(device_obj, stop_event: threading.Event) -> None:
    """
    Flash the LED of the YubiKey until stop_event is set.

    Every SELECT of the PIV application makes the LED blink. Errors (device
    removed, no smart card interface) just stop the flashing.
    """
    try:
        from yubikit.core.smartcard import SmartCardConnection

        with device_obj.open_connection(SmartCardConnection) as conn:
            while not stop_event.is_set():
                conn.send_and_receive(SELECT_PIV_APDU)
                # 2 x 100ms between flashes, checking for stop in between
                for _ in range(2):
                    if stop_event.is_set():
                        break
                    time.sleep(0.1)
    except Exception as e:
        logger.debug(f"Stopped flashing YubiKey: {e}")


class YubiKeySelector:
    """Interactive YubiKey selector with arrow-key navigation and LED feedback."""

    def __init__(self, devices: list[tuple[int, str]], device_objects: list) -> None:
        """
        Initialize the selector with device information.

        Args:
            devices: List of (serial, label) tuples for display
            device_objects: ykman device objects for flashing (None entries
                            are displayed but not flashed)
        """
        self.devices = devices
        self.device_objects = device_objects
        self.selected_index = 0
        self.confirmed = False
        self.flash_thread: threading.Thread | None = None
        self.stop_flash_event: threading.Event | None = None

    def get_formatted_text(self) -> FormattedText:
        lines: list[tuple[str, str]] = [
            ("", "\n"),
            ("bold", "Select a YubiKey:\n"),
            ("", "\n"),
        ]
        for i, (serial, label) in enumerate(self.devices):
            if i == self.selected_index:
                lines.append(("bg:#00aa00 fg:#ffffff", f"  → {i + 1}. Serial: {serial}"))
                lines.append(("bg:#00aa00 fg:#ffffff", f" {label}  \n"))
            else:
                lines.append(("", f"    {i + 1}. Serial: {serial}"))
                lines.append(("", f" {label}\n"))
        lines.append(("", "\n"))
        lines.append(("", "↑/↓ or 1-9 to move, ENTER to select, ESC or Ctrl-C to cancel\n"))
        return FormattedText(lines)

    def stop_flashing(self) -> None:
        if self.stop_flash_event is not None:
            self.stop_flash_event.set()
        if self.flash_thread is not None and self.flash_thread.is_alive():
            self.flash_thread.join(timeout=0.5)

    def flash_selected(self) -> None:
        """Flash the currently selected YubiKey in a background thread."""
        self.stop_flashing()
        if 0 <= self.selected_index < len(self.device_objects):
            device_obj = self.device_objects[self.selected_index]
            if device_obj is not None:
                self.stop_flash_event = threading.Event()
                self.flash_thread = threading.Thread(
                    target=flash_yubikey_continuously,
                    args=(device_obj, self.stop_flash_event),
                    daemon=True,
                )
                self.flash_thread.start()

    def move_up(self) -> None:
        if self.selected_index > 0:
            self.selected_index -= 1
            self.flash_selected()

    def move_down(self) -> None:
        if self.selected_index < len(self.devices) - 1:
            self.selected_index += 1
            self.flash_selected()

    def move_to(self, index: int) -> None:
        if 0 <= index < len(self.devices) and index != self.selected_index:
            self.selected_index = index
            self.flash_selected()

    def run(self) -> int | None:
        """Run the selector; return the 1-based index, or None if cancelled."""
        self.flash_selected()

        kb = KeyBindings()

        @kb.add("up")
        def move_up_handler(event) -> None:
            self.move_up()
            event.app.invalidate()

        @kb.add("down")
        def move_down_handler(event) -> None:
            self.move_down()
            event.app.invalidate()

        @kb.add("enter")
        def confirm_handler(event) -> None:
            self.confirmed = True
            event.app.exit()

        @kb.add("c-c")
        @kb.add("escape")
        def cancel_handler(event) -> None:
            event.app.exit()

        for digit in "123456789":
            @kb.add(digit)
            def jump_handler(event) -> None:
                self.move_to(int(event.data) - 1)
                event.app.invalidate()

        control = FormattedTextControl(text=self.get_formatted_text)
        window = Window(content=control, always_hide_cursor=True)
        app: Application = Application(
            layout=Layout(window), key_bindings=kb, full_screen=False, mouse_support=False
        )
        try:
            app.run()
        finally:
            self.stop_flashing()

        return self.selected_index + 1 if self.confirmed else None


def select_yubikey_interactively(serials: list[int]) -> int | None:
    """
    Let the operator pick one of several YubiKeys with the arrow keys.

    Returns:
        1-based index into `serials`, or None if cancelled
    """
    device_objects: list = [None] * len(serials)
    labels = [''] * len(serials)
    try:
        from ykman.device import list_all_devices

        # Enumerate once; match device objects by serial
        for dev_obj, dev_info in list_all_devices():
            if dev_info.serial in serials:
                i = serials.index(dev_info.serial)
                device_objects[i] = dev_obj
                labels[i] = f'(YubiKey {dev_info.version})'
    except Exception as e:
        # Without USB access the list is shown unflashed
        logger.debug(f"Cannot enumerate YubiKeys for flashing: {e}")

    selector = YubiKeySelector(list(zip(serials, labels)), device_objects)
    return selector.run()
