"""Per-thread DynamoDB resources and table handles."""
import threading

import boto3


class ThreadLocalDynamoDB:
    """
    boto3 resources are not thread safe, so each thread gets its own.

    The resource passed in (or created here) serves the creating thread.
    Other threads build one from a new boto3 session pointed at the same
    region and endpoint.
    """

    def __init__(self, dynamodb=None):
        self._owner = threading.get_ident()
        self._shared = dynamodb or boto3.session.Session().resource('dynamodb')
        self._local = threading.local()

    @property
    def resource(self):
        resource = getattr(self._local, 'resource', None)
        if resource is None:
            if threading.get_ident() == self._owner:
                resource = self._shared
            else:
                meta = self._shared.meta.client.meta
                resource = boto3.session.Session().resource(
                    'dynamodb',
                    region_name=meta.region_name,
                    endpoint_url=meta.endpoint_url
                )
            self._local.resource = resource
        return resource

    def table(self, name: str):
        """Table handle for the calling thread, cached per thread."""
        tables = getattr(self._local, 'tables', None)
        if tables is None:
            tables = self._local.tables = {}
        if name not in tables:
            tables[name] = self.resource.Table(name)
        return tables[name]
