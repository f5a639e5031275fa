from minion.cli import app

app()
