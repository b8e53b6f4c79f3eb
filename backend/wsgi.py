from toolunity import create_app

app = create_app()
