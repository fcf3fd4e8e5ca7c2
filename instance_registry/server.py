from __future__ import annotations

import uvicorn

from instance_registry.app import create_app
from instance_registry.logging_config import configure_logging
from instance_registry.settings import RegistrySettings


def main() -> None:
    settings = RegistrySettings()
    configure_logging(settings.log_level)
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    main()
