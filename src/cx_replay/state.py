from pathlib import Path


class CliState:
    """Options given to the top-level `cx-replay` callback, read by every command."""

    def __init__(self):
        self.verbose_mode: bool = False
        # Dotenv file with CX_REPLAY_* overrides.
        self.env_file: Path | None = None


APP_STATE = CliState()
