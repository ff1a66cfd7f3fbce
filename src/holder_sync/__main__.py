from holder_sync.cli import app

app(prog_name="holder-sync")
