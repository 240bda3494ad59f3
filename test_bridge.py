#!/usr/bin/env python3
"""Tests for the MCP gateway bridge: schema injection, rejections and error rendering."""

import asyncio
import json
import unittest
from unittest.mock import patch

from odata_gateway_lib.bridge import ODataGatewayBridge, _session_id
from odata_gateway_lib.connectivity import DirectConnectionProvider
from odata_gateway_lib.metadata_parser import MetadataParser
from test_metadata_parser import SAMPLE_METADATA, make_response


BP_PATH = "/sap/opu/odata/sap/API_BUSINESS_PARTNER"
GL_PATH = "/sap/opu/odata/sap/C_GLACCOUNTBALANCE_CDS"

GL_METADATA = b"""<?xml version="1.0" encoding="utf-8"?>
<edmx:Edmx Version="1.0" xmlns:edmx="http://schemas.microsoft.com/ado/2007/06/edmx">
  <edmx:DataServices>
    <Schema Namespace="C_GLACCOUNTBALANCE_CDS" xmlns="http://schemas.microsoft.com/ado/2008/09/edm">
      <EntityType Name="C_GLAccountBalanceResult">
        <Key><PropertyRef Name="ID"/></Key>
        <Property Name="ID" Type="Edm.String" Nullable="false"/>
        <Property Name="CompanyCode" Type="Edm.String" MaxLength="4"/>
        <Property Name="FiscalYear" Type="Edm.String" MaxLength="4"/>
        <Property Name="GLAccount" Type="Edm.String" MaxLength="10"/>
        <Property Name="FiscalPeriod" Type="Edm.String" MaxLength="3"/>
        <Property Name="AmountInCompanyCodeCurrency" Type="Edm.Decimal" Precision="24" Scale="3"/>
      </EntityType>
      <EntityContainer Name="C_GLACCOUNTBALANCE_CDS_Entities">
        <EntitySet Name="C_GLAccountBalance" EntityType="C_GLACCOUNTBALANCE_CDS.C_GLAccountBalanceResult"/>
      </EntityContainer>
    </Schema>
  </edmx:DataServices>
</edmx:Edmx>
"""

BP_ROWS = {"d": {"results": [{"BusinessPartner": "1000001", "BusinessPartnerFullName": "ACME"}], "__count": "1"}}


class FakeBackend:
    """Routes mocked requests: $metadata documents by service path, everything else to a data response."""

    def __init__(self):
        self.metadata = {BP_PATH: make_response(content=SAMPLE_METADATA),
                         GL_PATH: make_response(content=GL_METADATA)}
        self.data = make_response(json_data=BP_ROWS)
        self.urls = []

    def __call__(self, method, url, **kwargs):
        self.urls.append(url)
        if "$metadata" in url:
            return next(resp for path, resp in self.metadata.items() if path in url)
        return self.data

    def metadata_calls(self):
        return [u for u in self.urls if "$metadata" in u]

    def data_calls(self):
        return [u for u in self.urls if "$metadata" not in u]


class BridgeTestCase(unittest.TestCase):

    def setUp(self):
        MetadataParser.clear_all_caches()
        self.backend = FakeBackend()
        patcher = patch('requests.Session.request', side_effect=self.backend)
        self.mock_request = patcher.start()
        self.addCleanup(patcher.stop)
        provider = DirectConnectionProvider("http://sap.example.com:8000", "user", "secret")
        self.bridge = ODataGatewayBridge({"businesspartner": BP_PATH, "glaccount": GL_PATH}, provider=provider)

    def query(self, service="businesspartner", session="s1", **options):
        options.setdefault("entity_set", "A_BusinessPartner")
        return asyncio.run(self.bridge.handle_query(service, session, **options))


class TestSchemaInjection(BridgeTestCase):

    def test_first_query_carries_schema(self):
        text = self.query(inlinecount="allpages")
        self.assertTrue(text.startswith("SERVICE SCHEMA (businesspartner, shown once per session)"))
        self.assertIn("Namespace: API_BUSINESS_PARTNER", text)
        self.assertIn("1. BusinessPartner: 1000001, BusinessPartnerFullName: ACME", text)
        self.assertIn("Total count: 1", text)

    def test_schema_only_once_per_session(self):
        self.query()
        text = self.query()
        self.assertNotIn("SERVICE SCHEMA", text)
        self.assertTrue(text.startswith("Found 1 result(s):"))
        # Parsed metadata is cached across requests
        self.assertEqual(len(self.backend.metadata_calls()), 1)

    def test_independent_per_session(self):
        self.query(session="s1")
        self.assertIn("SERVICE SCHEMA", self.query(session="s2"))
        self.assertNotIn("SERVICE SCHEMA", self.query(session="s1"))

    def test_independent_per_service(self):
        self.query(service="businesspartner")
        text = self.query(service="glaccount", entity_set="C_GLAccountBalance",
                          filter="CompanyCode eq '1010' and FiscalYear eq '2024' and GLAccount eq '400000'")
        self.assertIn("SERVICE SCHEMA (glaccount", text)

    def test_schema_tool_marks_session(self):
        schema_text = asyncio.run(self.bridge.handle_schema("businesspartner", "s1"))
        self.assertIn("A_BusinessPartner -> A_BusinessPartnerType", schema_text)
        self.assertNotIn("SERVICE SCHEMA", self.query(session="s1"))

    def test_entity_type_details(self):
        text = asyncio.run(self.bridge.handle_schema("businesspartner", "s1", entity_type="A_BusinessPartnerType"))
        self.assertIn("BusinessPartner", text)
        self.assertIn("(required)", text)

    def test_injection_failure_tolerated(self):
        self.backend.metadata[BP_PATH] = make_response(status=500, text="Internal Server Error")
        with patch('sys.stderr'):
            text = self.query()
        self.assertTrue(text.startswith("Found 1 result(s):"))

        # Not marked as provided, so a later success still attaches the schema
        self.backend.metadata[BP_PATH] = make_response(content=SAMPLE_METADATA)
        self.assertIn("SERVICE SCHEMA", self.query())


class TestRejections(BridgeTestCase):

    def test_validator_rejection_sends_nothing(self):
        text = self.query(select="BusinessPartner", expand="to_BusinessPartnerAddress")
        self.assertTrue(text.startswith("QUERY REJECTED: businesspartner / A_BusinessPartner"))
        self.assertIn("[ERROR]", text)
        self.mock_request.assert_not_called()

    def test_missing_keys_sends_nothing(self):
        text = self.query(service="glaccount", entity_set="C_GLAccountBalance", filter="CompanyCode eq '1010'")
        self.assertIn("Missing: FiscalYear, GLAccount", text)
        self.mock_request.assert_not_called()

    def test_expand_on_cds_view_without_select_sends_nothing(self):
        text = self.query(service="glaccount", entity_set="C_GLAccountBalance", expand="to_CompanyCode",
                          filter="CompanyCode eq '1010' and FiscalYear eq '2024' and GLAccount eq '400000'")
        self.assertTrue(text.startswith("QUERY REJECTED: glaccount / C_GLAccountBalance"))
        self.assertIn("Remove 'expand' (to_CompanyCode)", text)
        self.assertNotIn("$select was not provided", text)
        self.mock_request.assert_not_called()

    def test_or_joined_keys_send_nothing(self):
        text = self.query(service="glaccount", entity_set="C_GLAccountBalance",
                          filter="CompanyCode eq '1010' or FiscalYear eq '2024' or GLAccount eq '400000'")
        self.assertIn("Missing: CompanyCode, FiscalYear, GLAccount", text)
        self.mock_request.assert_not_called()

    def test_select_derived_for_cds_view(self):
        text = self.query(service="glaccount", entity_set="C_GLAccountBalance",
                          filter="CompanyCode eq '1010' and FiscalYear eq '2024' and GLAccount eq '400000'")
        self.assertIn("$select was not provided; using: CompanyCode,FiscalYear,GLAccount", text)
        data_url = self.backend.data_calls()[0]
        self.assertIn("$select=CompanyCode%2CFiscalYear%2CGLAccount", data_url)

    def test_unknown_entity_set_after_schema_known(self):
        self.query()
        self.backend.urls.clear()
        text = self.query(entity_set="A_BusinessPartners")
        self.assertIn("Available entity sets: A_BusinessPartner, A_BusinessPartnerAddress", text)
        self.assertEqual(self.backend.urls, [])

    def test_invalid_parameters(self):
        text = self.query(top=-1)
        self.assertTrue(text.startswith("QUERY REJECTED: invalid parameters"))
        self.assertIn("top", text)
        self.mock_request.assert_not_called()


class TestErrors(BridgeTestCase):

    def test_lookup_error_includes_schema_excerpt(self):
        self.backend.data = make_response(status=404, json_data={
            "error": {"code": "/IWFND/CM_MGW/020",
                      "message": {"lang": "en", "value": "Resource not found for segment 'A_Foo'"}}})
        text = self.query(entity_set="A_Foo")

        self.assertTrue(text.startswith("QUERY FAILED"))
        self.assertIn("Entity set: A_Foo", text)
        self.assertIn("Status: 404", text)
        self.assertIn(f"URL: http://sap.example.com:8000{BP_PATH}/A_Foo?$format=json", text)
        self.assertIn("Schema excerpt", text)
        self.assertIn("A_BusinessPartnerAddress", text)

    def test_other_error_has_no_excerpt(self):
        self.backend.data = make_response(status=401, text="Unauthorized")
        text = self.query()
        self.assertIn("Status: 401", text)
        self.assertNotIn("Schema excerpt", text)
        self.assertEqual(self.backend.metadata_calls(), [])

    def test_excerpt_does_not_mark_session(self):
        self.backend.data = make_response(status=404, text="Resource not found for segment 'A_Foo'")
        self.query(entity_set="A_Foo")
        self.backend.data = make_response(json_data=BP_ROWS)
        self.assertIn("SERVICE SCHEMA", self.query())


class TestConfiguration(unittest.TestCase):

    def setUp(self):
        MetadataParser.clear_all_caches()

    def test_not_configured(self):
        with patch('sys.stderr'):
            bridge = ODataGatewayBridge({"businesspartner": BP_PATH}, provider=None)
        text = asyncio.run(bridge.handle_query("businesspartner", "s1", entity_set="A_BusinessPartner"))
        self.assertIn("is not configured", text)
        self.assertIn("is not configured", asyncio.run(bridge.handle_schema("businesspartner", "s1")))

    def test_tool_names(self):
        long_name = "a_really_long_service_name_" * 4
        bridge = ODataGatewayBridge({"businesspartner": BP_PATH, long_name: "/x"},
                                    provider=DirectConnectionProvider("http://sap:8000"))
        self.assertEqual(bridge.registered_tools["businesspartner"],
                         ["odata_query_businesspartner", "odata_schema_businesspartner"])
        for names in bridge.registered_tools.values():
            for name in names:
                self.assertLessEqual(len(name), 64)

    def test_info(self):
        bridge = ODataGatewayBridge({"glaccount": GL_PATH}, provider=DirectConnectionProvider("http://sap:8000"))
        info = json.loads(asyncio.run(bridge.handle_info()))
        self.assertTrue(info["services"]["glaccount"]["configured"])
        self.assertIn("cds_view", info["services"]["glaccount"]["profile"])
        self.assertEqual(info["tracked_sessions"], 0)

    def test_session_id_fallback(self):
        self.assertEqual(_session_id(None), "default")


if __name__ == "__main__":
    unittest.main()
