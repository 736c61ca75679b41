import json


# GraphQL 片段
_LIST_WEBHOOKS = """
query ListWebhooks($first:Int!, $topic: WebhookSubscriptionTopic){
  webhookSubscriptions(first: $first, topics: [$topic]) {
    edges {
      node {
        id
        topic
        endpoint {
          __typename
          ... on WebhookHttpEndpoint { callbackUrl }
        }
      }
    }
  }
}
""".strip()


_CREATE_WEBHOOK = """
mutation CreateWebhook($topic: WebhookSubscriptionTopic!, $cb: URL!){
  webhookSubscriptionCreate(
    topic: $topic
    webhookSubscription: { callbackUrl: $cb, format: JSON }
  ){
    userErrors { field message }
    webhookSubscription {
      id
      topic
      endpoint { __typename ... on WebhookHttpEndpoint { callbackUrl } }
    }
  }
}
""".strip()


# 简易转义器，确保值放入 search query 字符串安全
def escape_for_query(value: str) -> str:
    """转义并统一包裹双引号，用于 sku:"..." / title:"..." 搜索。"""
    inner = json.dumps(value or "")[1:-1]
    return f'"{inner}"'


# 商品分页（一个变体一行）。%(inventory_level)s 在配置了 location 时替换为按 location 取库存
PRODUCTS_PAGE = """
query ProductsPage($first: Int!, $after: String%(location_var)s) {
  products(first: $first, after: $after, sortKey: ID) {
    edges {
      node {
        id
        title
        vendor
        productType
        tags
        collections(first: 50) { nodes { title } }
        variants(first: 100) {
          nodes {
            id
            sku
            title
            price
            inventoryQuantity
            inventoryItem {
              id%(inventory_level)s
            }
          }
        }
      }
    }
    pageInfo {
      hasNextPage
      endCursor
    }
  }
}
""".strip()

_LOCATION_VAR = ", $locationId: ID!"
_INVENTORY_LEVEL = """
              inventoryLevel(locationId: $locationId) {
                quantities(names: ["available"]) { name quantity }
              }"""


def products_page_query(with_location: bool) -> str:
    return PRODUCTS_PAGE % {
        "location_var": _LOCATION_VAR if with_location else "",
        "inventory_level": _INVENTORY_LEVEL if with_location else "",
    }


VARIANT_BY_SKU = """
query VariantBySku($query: String!) {
  productVariants(first: 2, query: $query) {
    nodes {
      id
      sku
      product { id }
      inventoryItem { id }
    }
  }
}
""".strip()


COLLECTION_BY_TITLE = """
query CollectionByTitle($query: String!) {
  collections(first: 5, query: $query) {
    nodes { id title }
  }
}
""".strip()


COLLECTION_CREATE = """
mutation CollectionCreate($input: CollectionInput!) {
  collectionCreate(input: $input) {
    collection { id title }
    userErrors { field message }
  }
}
""".strip()


PRIMARY_LOCATION = """
{
  locations(first: 1) { nodes { id } }
}
""".strip()


PRODUCT_CREATE = """
mutation ProductCreate($product: ProductCreateInput!) {
  productCreate(product: $product) {
    product {
      id
      variants(first: 1) { nodes { id inventoryItem { id } } }
    }
    userErrors { field message }
  }
}
""".strip()


PRODUCT_UPDATE = """
mutation ProductUpdate($product: ProductUpdateInput!) {
  productUpdate(product: $product) {
    product { id }
    userErrors { field message }
  }
}
""".strip()


VARIANTS_BULK_UPDATE = """
mutation VariantsBulkUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id }
    userErrors { field message }
  }
}
""".strip()


INVENTORY_ACTIVATE = """
mutation InventoryActivate($inventoryItemId: ID!, $locationId: ID!, $available: Int) {
  inventoryActivate(inventoryItemId: $inventoryItemId, locationId: $locationId, available: $available) {
    inventoryLevel { id }
    userErrors { field message }
  }
}
""".strip()


INVENTORY_SET_QUANTITIES = """
mutation InventorySet($input: InventorySetQuantitiesInput!) {
  inventorySetQuantities(input: $input) {
    inventoryAdjustmentGroup { id }
    userErrors { field message code }
  }
}
""".strip()
