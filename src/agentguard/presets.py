"""Preset agent name sets.

Used as the agent pool when a project has no ``agentguard.yaml``. Each
set covers A-Z so a single letter is enough to name an agent.
"""

SET1: tuple[str, ...] = (
    "Adele", "Brian", "Charlie", "Dexter", "Emma", "Frank",
    "Grace", "Henry", "Iris", "Jack", "Kate", "Leo",
    "Mia", "Noah", "Olivia", "Paul", "Quinn", "Rose",
    "Sam", "Tara", "Uma", "Victor", "Wendy", "Xavier",
    "Yara", "Zelda",
)

SET2: tuple[str, ...] = (
    "Alfred", "Bella", "Carla", "Dylan", "Ethan", "Fiona",
    "George", "Holly", "Ivan", "Julia", "Kevin", "Luna",
    "Marcus", "Nadia", "Oscar", "Penny", "Quentin", "Rita",
    "Steve", "Tina", "Ulrich", "Vera", "Walter", "Xena",
    "Yuri", "Zara",
)

DEFAULT_POOL = SET1


def name_from_letter(letter: str, names: tuple[str, ...] = DEFAULT_POOL) -> str | None:
    """Resolve a single letter ("a", "B") to the preset name starting with it."""
    if len(letter) != 1 or not letter.isalpha():
        return None
    upper = letter.upper()
    for name in names:
        if name.startswith(upper):
            return name
    return None
