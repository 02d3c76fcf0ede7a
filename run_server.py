"""Run the answer API with uvicorn (reload enabled for local development)."""

import os
import socket
import sys

from dotenv import load_dotenv
load_dotenv()

from src.api.config import settings


def is_port_in_use(port):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex(('localhost', port)) == 0


if __name__ == "__main__":
    port = settings.api_port
    if is_port_in_use(port):
        print(f"Port {port} is already in use. Stop the other process or change API_PORT in .env")
        sys.exit(1)

    import uvicorn

    project_root = os.path.dirname(os.path.abspath(__file__))
    src_dir = os.path.join(project_root, "src")

    print("=" * 80)
    print(f"Starting server: http://{settings.api_host}:{port}")
    print("=" * 80)

    try:
        uvicorn.run(
            "src.api.main:app",
            host=settings.api_host,
            port=port,
            log_level=os.getenv("UVICORN_LOG_LEVEL", "info"),
            access_log=True,
            reload=True,
            reload_dirs=[src_dir],
        )
    except KeyboardInterrupt:
        print("\nServer stopped")
