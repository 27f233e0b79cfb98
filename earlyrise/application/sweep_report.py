"""
Result summary shared by the periodic sweeps.

Свип никогда не падает из-за одного пользователя: ошибка записывается сюда
(не больше error_limit примеров), счётчики продолжают расти.
"""
from dataclasses import dataclass, field

INTENDED_SAMPLE = 50


@dataclass
class SweepReport:
    dry_run: bool = False
    counts: dict[str, int] = field(default_factory=dict)
    errors: list[dict] = field(default_factory=list)
    intended: list[dict] = field(default_factory=list)
    error_limit: int = 20

    def inc(self, key: str, n: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + n

    def add_error(self, user_id: int | None, stage: str, message: str) -> None:
        self.inc("errors")
        if len(self.errors) < self.error_limit:
            self.errors.append({"user_id": user_id, "stage": stage, "message": message})

    def plan(self, action: str, user_id: int, **details) -> None:
        """Record an effect the sweep performs (or would perform in dry-run)."""
        if len(self.intended) < INTENDED_SAMPLE:
            self.intended.append({"action": action, "user_id": user_id, **details})

    def as_dict(self) -> dict:
        return {
            "ok": True,
            "dry_run": self.dry_run,
            **self.counts,
            "errors": self.counts.get("errors", 0),
            "error_sample": self.errors,
            "intended": self.intended,
        }
