from app.procuretrain import create_app

app = create_app()
