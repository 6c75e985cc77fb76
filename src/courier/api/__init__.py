"""FastAPI management API for Courier.

Example:
    ```python
    import uvicorn
    from courier.api import create_app

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
    ```

Or run directly:
    ```bash
    uvicorn courier.api:create_app --factory --reload
    ```
"""

from .app import create_app, register_exception_handlers
from .router import router, set_service

__all__ = [
    "create_app",
    "register_exception_handlers",
    "router",
    "set_service",
]
