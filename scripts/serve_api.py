from __future__ import annotations

import uvicorn

from tenantvault.apps.api.main import create_app
from tenantvault.core.config import get_settings


def main() -> None:
    # Serve the admin API with env-driven bind settings.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.admin_api_host, port=settings.admin_api_port)


if __name__ == "__main__":
    main()
