#!/usr/bin/env python3
from __future__ import annotations
import argparse, json, sys

from syncbridge.core.logging import configure_logging
from syncbridge.db.session import session_scope
from syncbridge.repository import installation_repo
from syncbridge.services import installation_service
from syncbridge.utils.secrets import decrypt_value


'''
运维小脚本：补注册源店铺的 webhook 订阅（安装时注册失败 / 换了 SHOPIFY_WEBHOOK_HOST 之后用）
    - 回调地址取 SHOPIFY_WEBHOOK_HOST + API_PREFIX + /webhooks/shopify
    - 已存在同 topic 同地址的订阅不会重复创建
    - 用法：
    python scripts/register_webhooks.py --shop acme.myshopify.com
'''
def main() -> int:
    ap = argparse.ArgumentParser(description="Re-register Shopify webhook subscriptions for an installed shop.")
    ap.add_argument("--shop", required=True, help="source shop domain, e.g. acme.myshopify.com")
    args = ap.parse_args()

    configure_logging()
    if not installation_service.webhook_callback_url():
        print("ERROR: SHOPIFY_WEBHOOK_HOST is not set", file=sys.stderr)
        return 2

    with session_scope() as db:
        installation = installation_repo.get_by_shop(db, args.shop.strip().lower())
        if installation is None or not installation.access_token:
            print(f"ERROR: {args.shop} is not installed (or needs re-install)", file=sys.stderr)
            return 1
        results = installation_service.register_webhooks(db, installation, decrypt_value(installation.access_token))

    if results is None:
        print("ERROR: registration failed, see sync logs", file=sys.stderr)
        return 1
    print(json.dumps(results, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
