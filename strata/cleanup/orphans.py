"""
Orphan resource cleanup.

API Gateway VPC links are created as a side effect of the api-gateway nested
stack and can survive a rollback, which then blocks deletion of the stack
and its network resources.
"""

import logging
from typing import List

from botocore.exceptions import ClientError

from ..aws import error_code, error_message, raise_client_error
from ..errors import DeleteBlockedError
from ..waiting import Waiter
from .models import OrphanResource, SweepResult

logger = logging.getLogger(__name__)


class OrphanCleaner:
    """Find and delete VPC links whose name contains a run's naming prefix."""

    def __init__(self, apigatewayv2, waiter: Waiter):
        self.api = apigatewayv2
        self.waiter = waiter

    def list_orphans(self, prefix: str) -> List[OrphanResource]:
        found = []
        kwargs = {}
        try:
            while True:
                response = self.api.get_vpc_links(**kwargs)
                for item in response.get("Items", []):
                    if prefix in item.get("Name", ""):
                        found.append(OrphanResource(
                            service="vpc-link",
                            resource_id=item["VpcLinkId"],
                            name=item.get("Name", ""),
                            status=item.get("VpcLinkStatus"),
                        ))
                token = response.get("NextToken")
                if not token:
                    break
                kwargs["NextToken"] = token
        except ClientError as e:
            raise_client_error(e, "apigateway:GET", DeleteBlockedError)
        return found

    def cleanup_orphans(self, prefix: str, wait: bool = True) -> SweepResult:
        """
        Delete every matching orphan, one at a time.

        A failure on one resource is recorded and the sweep continues.
        With ``wait``, polls until the deletions have propagated or the
        waiter budget is spent.

        Returns:
            SweepResult: ``count`` is the number of resources deleted
        """
        result = SweepResult(prefix=prefix)
        result.found = self.list_orphans(prefix)

        if not result.found:
            logger.info(f"No orphaned VPC links matching '{prefix}'")
            return result

        logger.warning(f"Found {len(result.found)} orphaned VPC link(s) matching '{prefix}'")
        for orphan in result.found:
            try:
                self.api.delete_vpc_link(VpcLinkId=orphan.resource_id)
                result.deleted.append(orphan.resource_id)
                logger.info(f"Deleted VPC link {orphan.name} ({orphan.resource_id})")
            except ClientError as e:
                if error_code(e) == "NotFoundException":
                    logger.info(f"VPC link {orphan.resource_id} already gone")
                    continue
                result.failed[orphan.resource_id] = error_message(e)
                logger.warning(f"Could not delete VPC link {orphan.resource_id}: {error_message(e)}")

        if wait and result.deleted:
            wait_result = self.waiter.wait_for(
                lambda: [o.resource_id for o in self.list_orphans(prefix)],
                lambda remaining: not remaining,
            )
            result.still_present = list(wait_result.value or [])
            if result.still_present:
                logger.warning(f"VPC links still deleting: {', '.join(result.still_present)}")
            else:
                logger.info("All orphaned VPC links deleted")

        return result
