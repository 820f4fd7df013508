import os
import sys

from app.capture.run import main as capture_main
from app.main import app

if __name__ == "__main__":
    # With arguments, behave as the capture CLI; otherwise serve the control
    # API. The hosting environment may provide PORT; default to 8080.
    if len(sys.argv) > 1:
        raise SystemExit(capture_main(sys.argv[1:]))
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port)
