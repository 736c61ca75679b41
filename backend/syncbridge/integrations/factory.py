"""按平台标签构造连接器；凭证在这里解密，调用方拿不到明文"""
from __future__ import annotations

from typing import Optional

import requests

from syncbridge.core.config import settings
from syncbridge.db.model.connection import Connection, PLATFORM_SHOPIFY, PLATFORM_WOOCOMMERCE
from syncbridge.db.model.installation import Installation
from syncbridge.integrations.connector import StoreConnector
from syncbridge.integrations.errors import Unauthorized
from syncbridge.integrations.shopify.shopify_store import ShopifyStore
from syncbridge.integrations.woocommerce.woo_store import WooCommerceStore
from syncbridge.utils.secrets import decrypt_value


# 源店铺：安装了 App 的 Shopify shop
def build_source_connector(installation: Installation, *, session: Optional[requests.Session] = None) -> ShopifyStore:
    token = decrypt_value(installation.access_token)
    if not token:
        raise Unauthorized(f"installation {installation.shop_domain} has no access token")
    return ShopifyStore(installation.shop_domain, token, list_retries=settings.SYNC_LIST_RETRIES, session=session)


def build_destination_connector(connection: Connection, *, session: Optional[requests.Session] = None) -> StoreConnector:
    if connection.platform == PLATFORM_SHOPIFY:
        token = decrypt_value(connection.dest_access_token)
        if not token or not connection.dest_shop_domain:
            raise Unauthorized(f"connection {connection.id} has no destination credential")
        return ShopifyStore(
            connection.dest_shop_domain,
            token,
            location_id=connection.dest_location_id,
            list_retries=settings.SYNC_LIST_RETRIES,
            session=session,
        )

    if connection.platform == PLATFORM_WOOCOMMERCE:
        secret = decrypt_value(connection.consumer_secret)
        if not secret or not connection.consumer_key or not connection.base_url:
            raise Unauthorized(f"connection {connection.id} has no destination credential")
        return WooCommerceStore(
            connection.base_url, connection.consumer_key, secret, list_retries=settings.SYNC_LIST_RETRIES, session=session,
        )

    raise ValueError(f"unsupported platform: {connection.platform}")
