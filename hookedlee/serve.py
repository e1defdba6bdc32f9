"""Process entry point: run the gateway under uvicorn, with TLS when certificates exist."""

import os

import uvicorn

from hookedlee.config.settings import get_settings
from hookedlee.errors import ConfigurationError
from hookedlee.logging.audit import get_audit_logger, setup_logging


def ssl_options(settings) -> dict:
    """uvicorn TLS kwargs, or an empty dict when the key/cert pair is missing."""
    if not (os.path.isfile(settings.ssl_key_path) and os.path.isfile(settings.ssl_cert_path)):
        return {}
    options = {
        "ssl_keyfile": settings.ssl_key_path,
        "ssl_certfile": settings.ssl_cert_path,
    }
    if os.path.isfile(settings.ssl_ca_path):
        options["ssl_ca_certs"] = settings.ssl_ca_path
    return options


def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    logger = get_audit_logger()

    try:
        settings.validate_for_startup()
    except ConfigurationError as e:
        logger.error("Refusing to start", extra={"audit_data": {"reason": str(e)}})
        raise SystemExit(1)

    tls = ssl_options(settings)
    port = settings.https_port if tls else settings.http_port
    if not tls:
        logger.warning("SSL certificates not found, serving plain HTTP")

    uvicorn.run(
        "hookedlee.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=port,
        proxy_headers=settings.trust_proxy,
        log_level=settings.log_level.lower(),
        **tls,
    )


if __name__ == "__main__":
    main()
