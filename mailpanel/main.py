import logging
import sys
import socket
from pathlib import Path
import uvicorn

from .config import get_settings
from .logging_cfg import setup_logging

logger = logging.getLogger(__name__)


def ensure_root_in_path():
    # Allow running from the project root or from inside the package directory
    project_root = Path(__file__).resolve().parent.parent
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))


def pick_free_port(preferred: int) -> int:
    # Try preferred first, then scan upward to preferred+20
    for p in [preferred] + list(range(preferred + 1, preferred + 21)):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                s.bind(("127.0.0.1", p))
            except OSError:
                continue
            return p
    raise RuntimeError("No free port found near preferred range")


def main():
    ensure_root_in_path()
    settings = get_settings()
    setup_logging(debug=settings.debug, log_file=settings.log_file)
    port = pick_free_port(settings.backend_port)
    if port != settings.backend_port:
        logger.warning("Preferred port %s busy; using %s", settings.backend_port, port)
    if settings.backend_token == "dev-token":
        logger.warning("BACKEND_TOKEN is the development default; set it before exposing the panel")
    logger.info("IMAP %s:%s, SMTP %s:%s", settings.imap_host, settings.imap_port, settings.smtp_host, settings.smtp_port)
    logger.info("Listening on 127.0.0.1:%s", port)
    uvicorn.run("mailpanel.api:app", host="127.0.0.1", port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
