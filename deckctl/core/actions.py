"""Action name and colour encoding for button slots."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping

from deckctl.core.model import ActionType, ButtonAction, ProtocolSpec

_COLOR_RE = re.compile(r"^#?([0-9a-fA-F]{6})$")
_MEDIA_PREFIXES = ("MEDIA_", "VOLUME_", "BRIGHTNESS_")
_MEDIA_ALIASES = {"MUTE": "VOLUME_MUTE"}
LOGGER = logging.getLogger(__name__)


def color_to_hex(color: tuple[int, int, int]) -> str:
    r, g, b = color
    return f"#{r:02x}{g:02x}{b:02x}"


def color_from_hex(value: str) -> tuple[int, int, int]:
    match = _COLOR_RE.match(value.strip())
    if not match:
        raise ValueError(f"color must be 6 hex digits, got '{value}'")
    raw = bytes.fromhex(match.group(1))
    return raw[0], raw[1], raw[2]


class ActionCodec:
    """Maps action names such as ``KEY_A`` or ``VOLUME_UP`` to wire codes.

    Unknown names are never dropped: an unknown key falls back to the
    profile's fallback key code, an unknown media action to the fallback
    media code, and anything else to ``NONE``. Each substitution is logged.
    """

    def __init__(
        self,
        keys: Mapping[str, int],
        media: Mapping[str, int],
        *,
        fallback_key_code: int = ProtocolSpec.fallback_key_code,
        fallback_media_code: int = ProtocolSpec.fallback_media_code,
    ) -> None:
        self.keys = {name.upper(): code for name, code in keys.items()}
        self.media = {name.upper(): code for name, code in media.items()}
        self.fallback_key_code = fallback_key_code
        self.fallback_media_code = fallback_media_code
        self._key_names = {code: name for name, code in self.keys.items()}
        self._media_names = {code: name for name, code in self.media.items()}

    def from_name(self, name: str) -> ButtonAction:
        normalized = name.strip().upper()
        if not normalized or normalized == "NONE":
            return ButtonAction()
        if normalized == "MACRO":
            return ButtonAction(ActionType.MACRO)
        if normalized == "CUSTOM":
            return ButtonAction(ActionType.CUSTOM)

        normalized = _MEDIA_ALIASES.get(normalized, normalized)
        if normalized in self.media or normalized.startswith(_MEDIA_PREFIXES):
            code = self.media.get(normalized)
            if code is None:
                LOGGER.warning(
                    "Unknown media action '%s', substituting code 0x%02X",
                    name,
                    self.fallback_media_code,
                )
                code = self.fallback_media_code
            return ButtonAction(ActionType.MEDIA, code)

        if normalized.startswith("KEY_"):
            code = self.keys.get(normalized[4:])
            if code is None:
                LOGGER.warning(
                    "Unknown key '%s', substituting code 0x%02X",
                    name,
                    self.fallback_key_code,
                )
                code = self.fallback_key_code
            return ButtonAction(ActionType.KEY, code)

        LOGGER.warning("Unrecognized action '%s', button will have no action", name)
        return ButtonAction()

    def to_name(self, action: ButtonAction) -> str:
        if action.kind == ActionType.KEY:
            return f"KEY_{self._key_names.get(action.code, f'0x{action.code:02X}')}"
        if action.kind == ActionType.MEDIA:
            return self._media_names.get(action.code, f"MEDIA_0x{action.code:02X}")
        if action.kind in (ActionType.MACRO, ActionType.CUSTOM):
            return action.kind.name
        return ""
