"""Dashboard JSON API routers."""

from .admin import create_admin_router
from .api_keys import create_api_keys_router
from .auth import create_auth_router
from .chatbot import create_chatbot_router
from .connections import create_connections_router
from .contacts import create_contacts_router
from .messages import create_messages_router
from .notifications import create_notifications_router
from .public import create_public_router
from .quick_replies import create_quick_replies_router
from .runtime import ApiRuntime
from .scheduled import create_scheduled_router
from .stats import create_stats_router
from .templates import create_templates_router

__all__ = [
    "ApiRuntime",
    "create_admin_router",
    "create_api_keys_router",
    "create_auth_router",
    "create_chatbot_router",
    "create_connections_router",
    "create_contacts_router",
    "create_messages_router",
    "create_notifications_router",
    "create_public_router",
    "create_quick_replies_router",
    "create_scheduled_router",
    "create_stats_router",
    "create_templates_router",
]
