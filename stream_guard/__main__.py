from .cli import app

app(prog_name="stream-guard")
