# backend/wsgi.py
import os

from kiosk import create_app
from kiosk.workers import start_background_worker

app = create_app()
start_background_worker(app)

if __name__ == "__main__":
    # threaded: each SSE client holds a request thread open
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "5001")), threaded=True)
