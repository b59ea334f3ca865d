"""
Decoy form parameters and classification of inbound forms.

Every agent request carries one real parameter hidden among randomly
generated decoys. Keys are base64 text: the handshake key decodes to one
sentinel character, a data key decodes to the session id, decoys decode
to random alphanumerics of two or more characters.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from websock.config import CONFIG
from websock.envelope import EnvelopeFormatError, b64decode, b64encode

_ALPHABET = string.ascii_letters + string.digits

FormPairs = List[Tuple[str, str]]


@dataclass(frozen=True)
class Handshake:
    key: str
    value: str


@dataclass(frozen=True)
class SessionData:
    key: str
    session_id: str
    value: str


Classification = Optional[Union[Handshake, SessionData]]


def sentinel_set(cfg: Optional[dict] = None) -> FrozenSet[str]:
    cfg = cfg or CONFIG
    return frozenset(cfg["SENTINEL_CHARSET"])


def random_text(low: int, high: int) -> str:
    length = low + secrets.randbelow(high - low + 1)
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def sentinel_key(cfg: Optional[dict] = None) -> str:
    cfg = cfg or CONFIG
    return b64encode(secrets.choice(cfg["SENTINEL_CHARSET"]).encode("ascii"))


def session_key(session_id: str) -> str:
    return b64encode(session_id.encode("utf-8"))


def _decoy_value_bound(real_value: str, cfg: dict) -> int:
    if cfg["DECOY_VALUE_MAX_LEN"] == -1:
        return max(2, len(real_value) * 2)
    return cfg["DECOY_VALUE_MAX_LEN"]


def build_parameters(
    real_key: str,
    real_value: str,
    cfg: Optional[dict] = None,
    count: Optional[int] = None,
) -> FormPairs:
    """Surround ``(real_key, real_value)`` with decoys at a uniformly random position.

    ``count`` fixes the number of decoys; by default it is drawn from
    ``DECOY_MIN_PARAMETERS..DECOY_MAX_PARAMETERS``.
    """
    cfg = cfg or CONFIG
    if count is None:
        low, high = cfg["DECOY_MIN_PARAMETERS"], cfg["DECOY_MAX_PARAMETERS"]
        count = low + secrets.randbelow(high - low + 1)
    sentinels = sentinel_set(cfg)
    value_bound = _decoy_value_bound(real_value, cfg)

    pairs: FormPairs = []
    used = {real_key}
    while len(pairs) < count:
        text = random_text(2, cfg["DECOY_KEY_MAX_LEN"])
        key = b64encode(text.encode("ascii"))
        if text in sentinels or key in used:
            continue
        used.add(key)
        pairs.append((key, b64encode(random_text(1, value_bound).encode("ascii"))))

    pairs.insert(secrets.randbelow(count + 1), (real_key, real_value))
    return pairs


def _decoded_key(key: str) -> Optional[str]:
    try:
        return b64decode(key).decode("utf-8")
    except (EnvelopeFormatError, UnicodeDecodeError):
        return None


def _first(values: Union[str, Sequence[str]]) -> str:
    if isinstance(values, str):
        return values
    return values[0] if values else ""


def classify(
    form: Union[Mapping[str, Sequence[str]], Iterable[Tuple[str, str]]],
    sentinels: Iterable[str],
    is_session: Callable[[str], bool],
) -> Classification:
    """Find the real parameter in an inbound form.

    A key decoding to a sentinel wins over any session key, and within
    each kind the first key in form order wins. Keys that are not valid
    base64 text are skipped. Returns None when nothing matches.
    """
    if isinstance(form, Mapping):
        items = [(key, _first(values)) for key, values in form.items()]
    else:
        items = list(form)
    sentinel_strings = frozenset(sentinels)

    decoded = [(key, _decoded_key(key), value) for key, value in items]
    for key, text, value in decoded:
        if text is not None and text in sentinel_strings:
            return Handshake(key=key, value=value)
    for key, text, value in decoded:
        if text and is_session(text):
            return SessionData(key=key, session_id=text, value=value)
    return None
