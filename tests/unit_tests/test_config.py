"""
Unit tests for configuration.
"""

import os
import unittest
from argparse import Namespace
from unittest.mock import patch

from config import OrchestratorConfig, validate_k8s_name


class TestOrchestratorConfig(unittest.TestCase):
    """Test OrchestratorConfig data model."""

    def test_config_defaults(self):
        """Test default configuration values."""
        config = OrchestratorConfig()
        self.assertEqual(config.namespaces, [])
        self.assertEqual(config.crd_group, "marklogic.progress.com")
        self.assertEqual(config.crd_plural, "marklogicclusters")
        self.assertEqual(config.precheck_poll_interval, 120)
        self.assertEqual(config.approval_poll_interval, 300)
        self.assertEqual(config.rollout_poll_interval, 120)
        self.assertEqual(config.rollout_timeout, 7200)
        self.assertEqual(config.min_cluster_age, 300)
        self.assertEqual(config.max_parallel, 5)
        self.assertFalse(config.verbose)

    def test_config_from_args(self):
        """Test creating config from command-line arguments."""
        args = Namespace(
            api_server="https://10.0.0.2",
            namespaces=["marklogic", "ml-staging"],
            cluster="ml-prod",
            ca_cert="/etc/ca.crt",
            container_name="marklogic-server",
            precheck_poll_interval=60,
            approval_poll_interval=120,
            rollout_poll_interval=30,
            rollout_timeout=0,
            min_cluster_age=600,
            max_parallel=10,
            loop_interval=15,
            verbose=True,
        )
        config = OrchestratorConfig.from_args(args)

        self.assertEqual(config.api_server, "https://10.0.0.2")
        self.assertEqual(config.namespaces, ["marklogic", "ml-staging"])
        self.assertEqual(config.cluster, "ml-prod")
        self.assertEqual(config.rollout_timeout, 0)
        self.assertEqual(config.max_parallel, 10)
        self.assertTrue(config.verbose)

    def test_validation_rejects_bad_values(self):
        for kwargs in (
            {"namespaces": ["Bad_NS"]},
            {"cluster": "-ml"},
            {"max_parallel": 0},
            {"rollout_timeout": -1},
            {"approval_poll_interval": 0},
        ):
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(ValueError):
                    OrchestratorConfig(**kwargs).validate()

    @patch.dict(
        os.environ,
        {
            "ML_UPGRADE_NAMESPACES": "marklogic, ml-staging",
            "ML_UPGRADE_ROLLOUT_TIMEOUT": "3600",
            "ML_UPGRADE_EMIT_EVENTS": "false",
        },
    )
    def test_from_env(self):
        config = OrchestratorConfig.from_env()

        self.assertEqual(config.namespaces, ["marklogic", "ml-staging"])
        self.assertEqual(config.rollout_timeout, 3600)
        self.assertFalse(config.emit_events)

    @patch.dict(os.environ, {"ML_UPGRADE_MAX_PARALLEL": "8", "ML_UPGRADE_CLUSTER": "ml-env"})
    def test_overrides_take_precedence(self):
        config = OrchestratorConfig.from_env({"max_parallel": 2, "namespaces": ["marklogic"]})

        self.assertEqual(config.max_parallel, 2)
        self.assertEqual(config.cluster, "ml-env")
        self.assertEqual(config.namespaces, ["marklogic"])

    @patch.dict(os.environ, {"ML_UPGRADE_MAX_PARALLEL": "lots"})
    def test_from_env_invalid_number(self):
        with self.assertRaises(ValueError):
            OrchestratorConfig.from_env()

    def test_validate_k8s_name(self):
        self.assertTrue(validate_k8s_name("ml-prod"))
        self.assertTrue(validate_k8s_name("a"))
        self.assertFalse(validate_k8s_name("ML"))
        self.assertFalse(validate_k8s_name("ml-"))
        self.assertFalse(validate_k8s_name(""))


if __name__ == "__main__":
    unittest.main()
