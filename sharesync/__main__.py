from sharesync.cli import app

app()
