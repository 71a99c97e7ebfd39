import os
from typing import Any, Dict

import uvicorn


def _truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def server_options() -> Dict[str, Any]:
    return {
        "host": os.getenv("HOST", "0.0.0.0"),
        "port": int(os.getenv("PORT", "8000")),
        "reload": _truthy(os.getenv("RELOAD", "false")),
        "log_level": os.getenv("LOG_LEVEL", "info").lower(),
        "proxy_headers": True,
        "forwarded_allow_ips": os.getenv("FORWARDED_ALLOW_IPS", "*"),
    }


def main() -> None:
    uvicorn.run("assetdb.main:app", **server_options())


if __name__ == "__main__":
    main()
