"""Persistent memory: long-term MEMORY.md plus one notes file per day."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from clawgate.agent.memory_search import BM25Index, tokenize
from clawgate.utils.helpers import ensure_dir, today_date


@dataclass
class MemoryMatch:
    """A memory file that matched a search, with the matching lines."""
    file: str
    score: float
    matches: list[tuple[int, str]] = field(default_factory=list)  # (line number, line text)


class MemoryStore:
    """
    Markdown memory in the agent workspace.

    - MEMORY.md holds long-term facts.
    - memory/YYYY-MM-DD.md holds the notes of one day.
    """

    def __init__(self, workspace: Path):
        self.workspace = Path(workspace)
        self.long_term_file = self.workspace / "MEMORY.md"
        self.memory_dir = self.workspace / "memory"

    def daily_file(self, date: str | None = None) -> Path:
        return self.memory_dir / f"{date or today_date()}.md"

    def read_long_term(self) -> str:
        if self.long_term_file.exists():
            return self.long_term_file.read_text(encoding="utf-8")
        return ""

    def read_today(self) -> str:
        path = self.daily_file()
        if path.exists():
            return path.read_text(encoding="utf-8")
        return ""

    def list_daily_files(self) -> list[str]:
        """Daily note file names, newest first."""
        if not self.memory_dir.exists():
            return []
        return sorted((p.name for p in self.memory_dir.glob("????-??-??.md")), reverse=True)

    def append_today(self, text: str) -> Path:
        """Append a timestamped note to today's file."""
        ensure_dir(self.memory_dir)
        path = self.daily_file()
        stamp = datetime.now().strftime("%H:%M")
        header = "" if path.exists() else f"# {today_date()}\n\n"
        with path.open("a", encoding="utf-8") as f:
            f.write(f"{header}- {stamp} {text.strip()}\n")
        return path

    def remember(self, text: str) -> Path:
        """Append a fact to MEMORY.md."""
        ensure_dir(self.workspace)
        header = "" if self.long_term_file.exists() else "# Memory\n\n"
        with self.long_term_file.open("a", encoding="utf-8") as f:
            f.write(f"{header}- {text.strip()}\n")
        return self.long_term_file

    def get_memory_context(self, limit: int = 4000) -> str:
        """Long-term memory and today's notes for the system prompt."""
        parts = []
        long_term = self.read_long_term().strip()
        if long_term:
            parts.append(f"## Long-term Memory\n\n{long_term[:limit]}")
        today = self.read_today().strip()
        if today:
            parts.append(f"## Today's Notes\n\n{today[:limit]}")
        return "\n\n".join(parts)

    def _files(self) -> list[Path]:
        files = [self.long_term_file] if self.long_term_file.exists() else []
        if self.memory_dir.exists():
            files.extend(sorted(self.memory_dir.glob("**/*.md")))
        return files

    def search(self, query: str, max_results: int = 5) -> list[MemoryMatch]:
        """Rank memory files by BM25 and collect the lines that mention a query term."""
        index = BM25Index()
        index.build(self._files())
        terms = set(tokenize(query))
        results: list[MemoryMatch] = []
        for path, score in index.search(query, max_results=max_results):
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue
            match = MemoryMatch(file=str(path.relative_to(self.workspace)), score=score)
            for number, line in enumerate(lines, start=1):
                if terms & set(tokenize(line)):
                    match.matches.append((number, line.strip()))
            results.append(match)
        return results
