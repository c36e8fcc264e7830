from app.saudemax import create_app

app = create_app()
