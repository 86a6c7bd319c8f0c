from __future__ import annotations

import boto3

from standings.config import Settings
from standings.store import TABLE_ATTRIBUTE_DEFINITIONS, TABLE_KEY_SCHEMA


def main() -> None:
    settings = Settings.from_env()
    if settings.store.kind != "dynamodb":
        raise SystemExit("STORE_BACKEND=dynamodb is required")
    table_name = settings.ddb_table_name

    ddb = boto3.client("dynamodb")
    existing = ddb.list_tables().get("TableNames", [])
    if table_name in existing:
        print(f"Table already exists: {table_name}")
        return

    ddb.create_table(
        TableName=table_name,
        AttributeDefinitions=TABLE_ATTRIBUTE_DEFINITIONS,
        KeySchema=TABLE_KEY_SCHEMA,
        BillingMode="PAY_PER_REQUEST",
    )

    ddb.get_waiter("table_exists").wait(TableName=table_name)
    print(f"Created table: {table_name} (contests, submissions, leaderboards)")


if __name__ == "__main__":
    main()
