"""SQLAlchemy database models."""
from dotenv import load_dotenv
from app.models.base import Base
from app.models.submission import Submission


load_dotenv()

__all__ = [
    "Base",
    "Submission",
]
