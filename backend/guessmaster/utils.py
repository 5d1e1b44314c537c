import time


def now_ts() -> float:
    return time.time()


def normalize(text: str) -> str:
    return text.strip().lower()


def sort_leaderboard(players: list[dict]) -> list[dict]:
    return sorted(players, key=lambda p: (-p.get("score", 0), p["name"].lower()))
