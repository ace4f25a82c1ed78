from dotenv import load_dotenv

from core.db import fastapi_session

# Load .env for local development
load_dotenv()


def get_db():
    yield from fastapi_session()
