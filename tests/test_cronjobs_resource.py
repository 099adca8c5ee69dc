"""Tests for the CronJob resource handler."""

import unittest
from unittest import mock
from unittest.mock import MagicMock

from kubernetes import client

from arrears.concurrency import OperationContext
from arrears.kubernetes import SUSPENDED_ANNOTATION, SUSPENDED_TIME_ANNOTATION
from arrears.kubernetes.resources.cronjobs import CronJobResource

NOW = "2026-03-01T12:00:00Z"


def cronjob(name, suspend=False, annotations=None):
    return client.V1CronJob(
        metadata=client.V1ObjectMeta(name=name, namespace="ns-user1", annotations=annotations),
        spec=client.V1CronJobSpec(schedule="*/5 * * * *", suspend=suspend, job_template=client.V1JobTemplateSpec()),
    )


def page(items, continue_token=None):
    return client.V1CronJobList(items=items, metadata=client.V1ListMeta(_continue=continue_token))


class TestCronJobResource(unittest.TestCase):
    """Tests for the CronJob resource handler."""

    def setUp(self):
        """Set up the test."""
        self.connection = MagicMock()
        self.resource = CronJobResource(self.connection)
        self.api = self.connection.batch_v1_api
        self.ctx = OperationContext.background()

    @mock.patch("arrears.kubernetes.resources.cronjobs.now_rfc3339", return_value=NOW)
    def test_suspend(self, _):
        """Test that active cronjobs are suspended and annotated."""
        self.api.list_namespaced_cron_job.return_value = page([cronjob("backup"), cronjob("paused", suspend=True)])

        self.resource.suspend(self.ctx, "ns-user1")

        # Only the active CronJob is patched
        self.api.patch_namespaced_cron_job.assert_called_once_with(
            name="backup",
            namespace="ns-user1",
            body={
                "metadata": {"annotations": {SUSPENDED_ANNOTATION: "true", SUSPENDED_TIME_ANNOTATION: NOW}},
                "spec": {"suspend": True},
            },
        )

    def test_resume_only_ours(self):
        """Test that resume leaves alone cronjobs the tenant suspended."""
        self.api.list_namespaced_cron_job.return_value = page(
            [
                cronjob("backup", suspend=True, annotations={SUSPENDED_ANNOTATION: "true"}),
                cronjob("paused", suspend=True),
            ]
        )

        self.resource.resume(self.ctx, "ns-user1")

        self.api.patch_namespaced_cron_job.assert_called_once_with(
            name="backup",
            namespace="ns-user1",
            body={
                "metadata": {"annotations": {SUSPENDED_ANNOTATION: None, SUSPENDED_TIME_ANNOTATION: None}},
                "spec": {"suspend": False},
            },
        )

    def test_pagination(self):
        """Test that every page of cronjobs is processed."""
        self.api.list_namespaced_cron_job.side_effect = [
            page([cronjob("first")], continue_token="next"),
            page([cronjob("second")]),
        ]

        names = [item.metadata.name for item in self.resource.iter_resources(self.ctx, "ns-user1", batch_size=1)]

        self.assertEqual(names, ["first", "second"])
        self.assertEqual(self.api.list_namespaced_cron_job.call_args_list[1].kwargs["_continue"], "next")

    def test_deadline_is_forwarded(self):
        """Test that calls carry the remaining time of the context."""
        self.api.list_namespaced_cron_job.return_value = page([cronjob("backup")])

        self.resource.suspend(OperationContext.background().with_timeout(30), "ns-user1")

        timeout = self.api.patch_namespaced_cron_job.call_args.kwargs["_request_timeout"]
        self.assertGreater(timeout, 0)
        self.assertLessEqual(timeout, 30)


if __name__ == "__main__":
    unittest.main()
