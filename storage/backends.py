"""Key/value string storage backends for the events cache."""
import logging
import os
import re
from typing import Dict, Optional

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a storage backend cannot complete an operation."""


class InMemoryStorage:
    """Process-scoped storage; survives warm Lambda invocations."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage:
    """Stores each key as a UTF-8 text file inside a directory."""

    def __init__(self, directory: str):
        """
        Initialize file storage.

        Args:
            directory: Directory holding one file per key (created on demand)
        """
        self.directory = directory

    def _path(self, key: str) -> str:
        safe_key = re.sub(r'[^A-Za-z0-9_.-]', '_', key)
        return os.path.join(self.directory, f"{safe_key}.json")

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                f.write(value)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e

    def remove_item(self, key: str) -> None:
        path = self._path(key)
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to remove {path}: {e}") from e


class DynamoDBStorage:
    """Stores values as items of a DynamoDB table keyed by cache_key."""

    KEY_ATTRIBUTE = 'cache_key'
    VALUE_ATTRIBUTE = 'value'

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region, defaults to the environment configuration
        """
        self.table_name = table_name
        if region_name:
            self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        else:
            self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBStorage for table: {table_name}")

    def get_item(self, key: str) -> Optional[str]:
        try:
            response = self.table.get_item(Key={self.KEY_ATTRIBUTE: key})
        except ClientError as e:
            raise StorageError(f"Error reading {key} from {self.table_name}: {e}") from e

        item = response.get('Item')
        if not item:
            return None
        return item.get(self.VALUE_ATTRIBUTE)

    def set_item(self, key: str, value: str) -> None:
        try:
            self.table.put_item(
                Item={self.KEY_ATTRIBUTE: key, self.VALUE_ATTRIBUTE: value}
            )
        except ClientError as e:
            raise StorageError(f"Error writing {key} to {self.table_name}: {e}") from e

    def remove_item(self, key: str) -> None:
        try:
            self.table.delete_item(Key={self.KEY_ATTRIBUTE: key})
        except ClientError as e:
            raise StorageError(f"Error deleting {key} from {self.table_name}: {e}") from e
