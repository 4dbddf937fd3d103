"""Did-you-mean suggestions for mistyped agent names."""

from typing import Iterable, List


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            cost = 0 if ca == cb else 1
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost,
            ))
        previous = current
    return previous[-1]


def find_similar(name: str, candidates: Iterable[str], max_distance: int = 3) -> List[str]:
    """
    Candidates within max_distance edits of name, closest first.

    Comparison is case-insensitive; ties keep alphabetical order.
    """
    target = name.lower()
    scored = []
    for candidate in candidates:
        if candidate == name:
            continue
        distance = levenshtein(target, candidate.lower())
        if distance <= max_distance:
            scored.append((distance, candidate))
    return [c for _, c in sorted(scored)]


def format_suggestion(kind: str, name: str, suggestions: List[str], hint: str = "") -> str:
    """
    Build a not-found message:

        Polecat 'Tost' not found

        Did you mean?
          • Toast

        Or use --create to create: ...
    """
    parts = [f"{kind} '{name}' not found"]
    if suggestions:
        parts.append("Did you mean?\n" + "\n".join(f"  • {s}" for s in suggestions))
    if hint:
        parts.append(hint)
    return "\n\n".join(parts)
