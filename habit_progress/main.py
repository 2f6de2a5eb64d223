# Run with: uvicorn habit_progress.main:app --reload
from .api import create_app

app = create_app()
