from __future__ import annotations

import gettext
from contextvars import ContextVar
from pathlib import Path

import polib

from core.logging_config import get_logger

LOCALE_DIR = Path(__file__).resolve().parent.parent / "locales"
DOMAIN = "messages"

_current_locale: ContextVar[str] = ContextVar("current_locale", default="en")
_translators: dict[str, gettext.NullTranslations] = {}
_logger = get_logger(__name__)


class _POTranslations(gettext.NullTranslations):
    """Catalog read straight from a .po file when no compiled .mo is shipped."""

    def __init__(self, entries: dict[str, str]) -> None:
        super().__init__()
        self._entries = entries

    def gettext(self, message: str) -> str:
        return self._entries.get(message) or message


def set_locale(locale: str) -> None:
    """Set current request locale (fallback to 'en')."""
    _current_locale.set(locale or "en")


def get_locale() -> str:
    """Get current request locale (default 'en')."""
    return _current_locale.get()


def _load_translator(locale: str) -> gettext.NullTranslations:
    lc_dir = LOCALE_DIR / locale / "LC_MESSAGES"
    if (lc_dir / f"{DOMAIN}.mo").exists():
        return gettext.translation(DOMAIN, localedir=str(LOCALE_DIR), languages=[locale])
    po_path = lc_dir / f"{DOMAIN}.po"
    if po_path.exists():
        catalog = polib.pofile(str(po_path))
        return _POTranslations({e.msgid: e.msgstr for e in catalog if e.msgstr and not e.obsolete})
    return gettext.NullTranslations()


def _get_translator(locale: str) -> gettext.NullTranslations:
    tr = _translators.get(locale)
    if tr is not None:
        return tr
    try:
        tr = _load_translator(locale)
    except (OSError, ValueError) as exc:
        _logger.warning("i18n_catalog_load_failed", locale=locale, error=str(exc))
        tr = gettext.NullTranslations()
    _translators[locale] = tr
    return tr


def t(msgid: str, **params) -> str:
    """Translate msgid using current locale and format with params.

    Falls back to the English catalog, then to msgid itself.
    """
    text = _get_translator(get_locale()).gettext(msgid)
    if text == msgid and get_locale() != "en":
        text = _get_translator("en").gettext(msgid)
    if not params:
        return text
    try:
        return text.format(**params)
    except (KeyError, IndexError, ValueError) as exc:
        _logger.warning("i18n_format_failed", msgid=msgid, params=list(params.keys()), error=str(exc))
        return text
