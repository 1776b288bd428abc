import os

from storefront import create_app

app = create_app()
socketio = app.extensions["socketio"]


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    socketio.run(app, host="0.0.0.0", port=port)
