"""ASGI adapter for the admin API"""
from asgiref.wsgi import WsgiToAsgi
from app import app, PORT

# Flask is WSGI; uvicorn and friends need the ASGI wrapper
asgi_app = WsgiToAsgi(app)

application = asgi_app

if __name__ == "__main__":
    # local development only
    app.run(host="0.0.0.0", port=PORT, debug=True)
