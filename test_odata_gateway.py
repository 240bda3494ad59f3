#!/usr/bin/env python3
"""Tests for the command-line entry point."""

import io
import os
import unittest
from unittest.mock import patch

from odata_gateway import main, parse_http_addr, parse_service_args
from odata_gateway_lib.errors import ConfigurationError


class TestParseServiceArgs(unittest.TestCase):

    def test_repeated_and_comma_separated(self):
        services = parse_service_args(["bp=/sap/opu/odata/sap/API_BUSINESS_PARTNER",
                                        " gl = /sap/opu/odata/sap/C_GLACCOUNTBALANCE_CDS , so=/x,"])
        self.assertEqual(list(services), ["bp", "gl", "so"])
        self.assertEqual(services["gl"], "/sap/opu/odata/sap/C_GLACCOUNTBALANCE_CDS")

    def test_invalid(self):
        for arg in ("just-a-name", "=/path", "name="):
            with self.subTest(arg=arg):
                with self.assertRaises(ConfigurationError):
                    parse_service_args([arg])


class TestParseHttpAddr(unittest.TestCase):

    def test_forms(self):
        self.assertEqual(parse_http_addr(":8080"), ("0.0.0.0", 8080))
        self.assertEqual(parse_http_addr("localhost:9000"), ("localhost", 9000))
        self.assertEqual(parse_http_addr("9100"), ("0.0.0.0", 9100))
        self.assertEqual(parse_http_addr("host:abc"), ("host", 8080))


class TestMain(unittest.TestCase):

    def run_trace(self, argv, env):
        stdout, stderr = io.StringIO(), io.StringIO()
        with patch.dict(os.environ, env, clear=True), patch('sys.stdout', stdout), patch('sys.stderr', stderr):
            with self.assertRaises(SystemExit) as ctx:
                main(argv)
        return ctx.exception.code, stdout.getvalue(), stderr.getvalue()

    def test_trace_lists_services(self):
        code, out, _ = self.run_trace(["--trace", "--service", "bp=/sap/opu/odata/sap/API_BUSINESS_PARTNER"],
                                      {"ODATA_URL": "http://sap:8000"})
        self.assertEqual(code, 0)
        self.assertIn("Service 'bp' (configured)", out)
        self.assertIn("odata_query_bp", out)
        self.assertNotIn("glaccount", out)

    def test_services_from_env(self):
        _, out, _ = self.run_trace(["--trace"], {"ODATA_SERVICES": "gl=/sap/opu/odata/sap/C_GLACCOUNTBALANCE_CDS"})
        self.assertIn("Service 'gl' (NOT configured)", out)
        self.assertIn("gl (cds_view)", out)

    def test_bad_service_exits(self):
        code, _, err = self.run_trace(["--trace", "--service", "broken"], {})
        self.assertEqual(code, 1)
        self.assertIn("expected NAME=PATH", err)

    def test_missing_profiles_file_exits(self):
        code, _, err = self.run_trace(["--trace", "--profiles", "/nonexistent/profiles.json"], {})
        self.assertEqual(code, 1)
        self.assertIn("Profiles file not found", err)


if __name__ == "__main__":
    unittest.main()
