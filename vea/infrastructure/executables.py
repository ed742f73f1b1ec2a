import shutil
from pathlib import Path
from vea.domain.errors import SetupError


def resolve_executable(name: str) -> str:
    """Returns a runnable path for ``name`` (bare command or explicit path)."""
    candidate = Path(name).expanduser()
    if candidate.is_file():
        return str(candidate)
    found = shutil.which(name)
    if found:
        return found
    raise SetupError(f"Required executable not found: {name}")
