"""Language metadata and right-to-left text handling."""
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)

LEFT_TO_RIGHT_MARK = "\u200e"

_LTR_RUN_PATTERN = re.compile(r'https?://\S+|[\w.+-]+@[\w-]+(?:\.[\w-]+)+')


@dataclass(frozen=True)
class Language:
    code: str
    name: str
    rtl: bool = False


DEFAULT_LANGUAGES: Dict[str, Language] = {
    language.code: language for language in (
        Language("en", "English"),
        Language("zh", "Chinese (Simplified)"),
        Language("zh-TW", "Chinese (Traditional)"),
        Language("ja", "Japanese"),
        Language("ko", "Korean"),
        Language("es", "Spanish"),
        Language("fr", "French"),
        Language("de", "German"),
        Language("it", "Italian"),
        Language("pt", "Portuguese"),
        Language("pt-BR", "Portuguese (Brazil)"),
        Language("ru", "Russian"),
        Language("nl", "Dutch"),
        Language("pl", "Polish"),
        Language("tr", "Turkish"),
        Language("uk", "Ukrainian"),
        Language("cs", "Czech"),
        Language("sv", "Swedish"),
        Language("vi", "Vietnamese"),
        Language("th", "Thai"),
        Language("id", "Indonesian"),
        Language("hi", "Hindi"),
        Language("ar", "Arabic", rtl=True),
        Language("fa", "Persian", rtl=True),
        Language("he", "Hebrew", rtl=True),
        Language("ur", "Urdu", rtl=True),
    )
}


def build_language_table(locales: Optional[Iterable[Mapping[str, object]]] = None) -> Dict[str, Language]:
    """
    Merge configured locales into the default language table.

    Args:
        locales: Entries with ``code`` and ``name`` and an optional ``rtl`` flag,
            as found under ``supported_locales`` in the configuration file.

    Returns:
        A new table; configured entries override the defaults.
    """
    table = dict(DEFAULT_LANGUAGES)
    for locale in locales or []:
        code = locale.get('code')
        name = locale.get('name')
        if not code or not name:
            logger.warning("Ignoring supported_locales entry without code or name: %s", locale)
            continue
        default = DEFAULT_LANGUAGES.get(str(code))
        rtl = bool(locale.get('rtl', default.rtl if default else False))
        table[str(code)] = Language(str(code), str(name), rtl)
    return table


def _lookup(code: str, languages: Optional[Mapping[str, Language]]) -> Optional[Language]:
    table = languages if languages is not None else DEFAULT_LANGUAGES
    if code in table:
        return table[code]
    base_code = code.split("-")[0].split("_")[0]
    return table.get(base_code)


def language_name(code: str, languages: Optional[Mapping[str, Language]] = None) -> str:
    language = _lookup(code, languages)
    return language.name if language else code


def is_rtl_language(code: str, languages: Optional[Mapping[str, Language]] = None) -> bool:
    language = _lookup(code, languages)
    return bool(language and language.rtl)


def add_directional_marks(text: str) -> str:
    """Wrap URLs and e-mail addresses in left-to-right marks so they render correctly in RTL text."""
    if not text:
        return text
    return _LTR_RUN_PATTERN.sub(
        lambda match: f"{LEFT_TO_RIGHT_MARK}{match.group(0)}{LEFT_TO_RIGHT_MARK}",
        strip_directional_marks(text)
    )


def strip_directional_marks(text: str) -> str:
    return text.replace(LEFT_TO_RIGHT_MARK, "")
