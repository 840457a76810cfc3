"""Unit tests for validation.py - Cluster record spec validation."""

from validation import validate_cluster_record_spec, validate_spec_against_schema


class TestValidateSpecAgainstSchema:
    """Tests for validate_spec_against_schema function."""

    def test_valid_spec(self):
        schema = {
            "type": "object",
            "required": ["name"],
            "properties": {"name": {"type": "string"}},
        }
        is_valid, error = validate_spec_against_schema({"name": "x"}, schema)
        assert is_valid is True
        assert error is None

    def test_errors_are_joined_with_paths(self):
        schema = {
            "type": "object",
            "properties": {
                "a": {"type": "integer"},
                "b": {"type": "object", "properties": {"c": {"type": "string"}}},
            },
        }
        is_valid, error = validate_spec_against_schema({"a": "x", "b": {"c": 1}}, schema)
        assert is_valid is False
        assert "a: 'x' is not of type 'integer'" in error
        assert "b.c: 1 is not of type 'string'" in error

    def test_root_errors(self):
        schema = {"type": "object", "required": ["name"]}
        is_valid, error = validate_spec_against_schema({}, schema)
        assert is_valid is False
        assert error.startswith("(root):")


class TestValidateClusterRecordSpec:
    """Tests for validate_cluster_record_spec."""

    def test_complete_spec(self, full_spec):
        is_valid, error = validate_cluster_record_spec(full_spec)
        assert is_valid is True
        assert error is None

    def test_minimal_spec_lists_missing_fields(self):
        is_valid, error = validate_cluster_record_spec(
            {"region": "us-east-1", "version": "4.14.0"}
        )
        assert is_valid is False
        for field in ("machineCIDR", "accountID", "oidcID", "subnets", "rolesRef"):
            assert field in error

    def test_bad_account_id(self, full_spec):
        full_spec["accountID"] = "1234"
        is_valid, error = validate_cluster_record_spec(full_spec)
        assert is_valid is False
        assert "accountID" in error

    def test_bad_role_arn(self, full_spec):
        full_spec["rolesRef"]["ingressARN"] = "not-an-arn"
        is_valid, error = validate_cluster_record_spec(full_spec)
        assert is_valid is False
        assert "rolesRef.ingressARN" in error

    def test_empty_subnets(self, full_spec):
        full_spec["subnets"] = []
        is_valid, error = validate_cluster_record_spec(full_spec)
        assert is_valid is False
        assert "subnets" in error

    def test_govcloud_arn_accepted(self, full_spec):
        full_spec["installerRoleARN"] = "arn:aws-us-gov:iam::123456789012:role/installer"
        is_valid, _ = validate_cluster_record_spec(full_spec)
        assert is_valid is True
