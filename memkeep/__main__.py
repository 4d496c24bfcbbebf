import os

from dotenv import load_dotenv

from memkeep.cli.commands import app

# Load .env file from ~/.memkeep/ if it exists
# Precedence: existing env vars > .env file (override=False)
load_dotenv(os.path.expanduser("~/.memkeep/.env"), override=False)

if __name__ == "__main__":
    app()
