from app.edulms import create_app

app = create_app()
