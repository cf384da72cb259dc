import os
from typing import Dict, Mapping, Optional


def _strip_inline_comment(value: str) -> str:
    """
    Inline comments must start with ' #' (space then #).
    A '#' glued to the value (e.g. 'pass#1') is kept.
    """
    if " #" not in value:
        return value
    head, _comment = value.split(" #", 1)
    return head.rstrip()


def _unquote(value: str) -> str:
    v = value.strip()
    if len(v) >= 2 and v[0] == v[-1] and v[0] in ("'", '"'):
        return v[1:-1]
    return v


def parse_dotenv(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        value = value.lstrip()
        if not value.startswith(("'", '"')):
            value = _strip_inline_comment(value)
        out[key] = _unquote(value)
    return out


def load_dotenv(path: str, override: bool = False) -> Dict[str, str]:
    """
    Loads KEY=VALUE pairs into os.environ and returns the ones that were applied.
    With override=False variables already present in the environment are kept.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except OSError:
        return {}

    applied: Dict[str, str] = {}
    for k, v in parse_dotenv(content).items():
        if not override and k in os.environ:
            continue
        os.environ[k] = v
        applied[k] = v
    return applied


def load_dotenv_near(path: str, filename: str = ".env", override: bool = False) -> Dict[str, str]:
    if not path:
        return {}
    base_dir = os.path.dirname(os.path.abspath(path))
    return load_dotenv(os.path.join(base_dir, filename), override=override)


def prefixed_env(prefix: str, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Dict[str, str]]:
    """
    Collects ``<PREFIX><SECTION>__<FIELD>=value`` variables as
    ``{"section": {"field": "value"}}`` (names lower-cased). Variables without
    the ``__`` separator are grouped under the empty section name.
    """
    env = os.environ if environ is None else environ
    out: Dict[str, Dict[str, str]] = {}
    for key, value in env.items():
        if not key.startswith(prefix) or key == prefix:
            continue
        rest = key[len(prefix):].lower()
        section, sep, field = rest.partition("__")
        if not sep:
            section, field = "", rest
        if not field:
            continue
        out.setdefault(section, {})[field] = value
    return out
