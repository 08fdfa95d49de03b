"""
Wave slugs — human-readable names for wave containers.

Containers carry the fixed ``orchestration:wave`` label plus a slug label
``orchestration:wave:<slug>``; slugs are unique within a repository.
"""

from __future__ import annotations

import re
import time

ORCHESTRATION_WAVE_LABEL = "orchestration:wave"
ORCHESTRATION_WAVE_LABEL_PREFIX = f"{ORCHESTRATION_WAVE_LABEL}:"

ACTOR_LAST_NAMES = (
    "streep", "washington", "freeman", "depp", "blanchett", "winslet", "ledger",
    "pacino", "hoffman", "hanks", "daylewis", "swank", "bardem", "theron", "pitt",
    "jolie", "waltz", "weaver", "croft", "foster", "reeves", "clooney", "adams",
    "redmayne", "poitier", "mckellen", "affleck", "hamill", "fonda", "eastwood",
)

MOVIE_TITLE_WORDS = (
    "arrival", "gravity", "matrix", "heat", "memento", "casablanca", "vertigo",
    "sunset", "godfather", "noir", "jaws", "fargo", "inception", "apollo", "amadeus",
    "gladiator", "spotlight", "parasite", "goodfellas", "moonlight", "interstellar",
    "prestige", "whiplash", "network", "rocky", "titanic", "birdman", "uncut", "encore",
)

SET_BUZZWORDS = (
    "gaffer", "slate", "take", "rushes", "dailies", "blocking", "callback", "table",
    "location", "stunt", "foley", "grip", "boom", "lens", "dolly", "chroma",
    "wardrobe", "props", "montage", "cutaway", "continuity", "scene", "rehearsal",
    "premiere", "screening", "voiceover",
)

_NON_SLUG = re.compile(r"[^a-z0-9]+")


def normalize_slug(value: str) -> str:
    slug = _NON_SLUG.sub("-", value.lower().strip()).strip("-")
    return re.sub(r"-{2,}", "-", slug)


def is_wave_container(labels: list[str] | None) -> bool:
    return ORCHESTRATION_WAVE_LABEL in (labels or [])


def extract_wave_slug(labels: list[str] | None) -> str | None:
    for label in labels or []:
        if not label.startswith(ORCHESTRATION_WAVE_LABEL_PREFIX):
            continue
        normalized = normalize_slug(label[len(ORCHESTRATION_WAVE_LABEL_PREFIX):])
        if normalized:
            return normalized
    return None


def is_legacy_numeric_slug(slug: str | None) -> bool:
    return bool(slug) and slug.isdigit()


def build_wave_slug_label(slug: str) -> str:
    return f"{ORCHESTRATION_WAVE_LABEL_PREFIX}{normalize_slug(slug)}"


def _candidate(seed: int, attempt: int) -> str:
    actor = ACTOR_LAST_NAMES[(seed + attempt) % len(ACTOR_LAST_NAMES)]
    movie = MOVIE_TITLE_WORDS[(seed * 3 + attempt) % len(MOVIE_TITLE_WORDS)]
    buzz = SET_BUZZWORDS[(seed * 7 + attempt) % len(SET_BUZZWORDS)]
    variant = attempt % 3
    if variant == 0:
        return f"{actor}-{movie}"
    if variant == 1:
        return f"{movie}-{buzz}"
    return f"{actor}-{buzz}"


def allocate_wave_slug(used: set[str], preferred: str | None = None, seed: int | None = None) -> str:
    """Pick an unused slug, honouring ``preferred`` when it is valid and free.

    The chosen slug is added to ``used``.
    """
    wanted = normalize_slug(preferred) if preferred else ""
    if wanted and wanted not in used:
        used.add(wanted)
        return wanted

    if seed is None:
        seed = int(time.time() * 1000)
    seed += len(used) * 17
    max_attempts = len(ACTOR_LAST_NAMES) * len(MOVIE_TITLE_WORDS) * len(SET_BUZZWORDS)
    for attempt in range(max_attempts):
        candidate = _candidate(seed, attempt)
        if candidate not in used:
            used.add(candidate)
            return candidate

    base = _candidate(seed, max_attempts)
    for suffix in range(2, 10_000):
        candidate = f"{base}-{suffix}"
        if candidate not in used:
            used.add(candidate)
            return candidate

    emergency = f"{base}-{int(time.time() * 1000)}"
    used.add(emergency)
    return emergency


def build_wave_title(slug: str, name: str) -> str:
    clean = name.strip()
    return f"Scene {slug}: {clean}" if clean else f"Scene {slug}"

