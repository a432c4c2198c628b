from deploy_cli.cli import app

app(prog_name="os-factory")
