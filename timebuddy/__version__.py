"""
Version information for the Time Buddy query core.

The package version is read from the installed distribution metadata via
importlib.metadata, with pyproject.toml as the single source of truth.
"""

try:
    from importlib.metadata import version

    __version__ = version("timebuddy-query-core")
except Exception:
    # Fallback for development (package not installed)
    import tomllib
    from pathlib import Path

    try:
        pyproject_path = Path(__file__).parent.parent / "pyproject.toml"
        with open(pyproject_path, "rb") as f:
            pyproject = tomllib.load(f)
            __version__ = pyproject["project"]["version"]
    except Exception:
        # Last resort fallback
        __version__ = "0.0.0-dev"
