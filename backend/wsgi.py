from pipeflow import create_app

app = create_app()
