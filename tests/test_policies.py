"""Unit tests for auth/policies.py.

Covers:
- Policy-name parsing for RequirePermission and RequireRole (case, blanks, arity)
- Role claim extraction from "role"/"roles" in string, CSV and list forms
- ADMIN bypass and overlap rule of role requirements
"""

from auth.policies import (
    PermissionRequirement,
    RoleRequirement,
    normalize_role_codes,
    parse_policy,
    permission_policy,
    role_policy,
    role_requirement_satisfied,
    roles_from_claims,
)

# ---------------------------------------------------------------------------
# TestParsePolicy
# ---------------------------------------------------------------------------


class TestParsePolicy:
    def test_permission_policy_upper_cases_segments(self):
        req = parse_policy("RequirePermission:product_manager:view_list")
        assert req == PermissionRequirement("PRODUCT_MANAGER", "VIEW_LIST")

    def test_prefix_is_case_insensitive(self):
        req = parse_policy("requirepermission:USER_MANAGER:EDIT")
        assert req == PermissionRequirement("USER_MANAGER", "EDIT")

    def test_segments_are_trimmed(self):
        req = parse_policy("RequirePermission: POST_MANAGER : CREATE ")
        assert req == PermissionRequirement("POST_MANAGER", "CREATE")

    def test_wrong_segment_count_is_unrecognised(self):
        assert parse_policy("RequirePermission:ONLY_MODULE") is None
        assert parse_policy("RequirePermission:A:B:C") is None

    def test_blank_segment_is_unrecognised(self):
        assert parse_policy("RequirePermission: :VIEW_LIST") is None
        assert parse_policy("RequirePermission:PRODUCT_MANAGER:") is None

    def test_role_policy_normalises_codes(self):
        req = parse_policy("RequireRole: admin ,customer_care,ADMIN,")
        assert req == RoleRequirement(("ADMIN", "CUSTOMER_CARE"))

    def test_role_policy_without_codes_is_unrecognised(self):
        assert parse_policy("RequireRole: , ") is None

    def test_unknown_or_empty_names(self):
        assert parse_policy("SomethingElse") is None
        assert parse_policy("") is None
        assert parse_policy(None) is None

    def test_builders_round_trip(self):
        assert parse_policy(permission_policy("SUPPORT_MANAGER", "ACCESS")) == PermissionRequirement(
            "SUPPORT_MANAGER", "ACCESS"
        )
        assert parse_policy(role_policy("CUSTOMER")) == RoleRequirement(("CUSTOMER",))


# ---------------------------------------------------------------------------
# TestRoleClaims
# ---------------------------------------------------------------------------


class TestRoleClaims:
    def test_normalize_keeps_first_occurrence_order(self):
        assert normalize_role_codes(["care", " Admin", "CARE", ""]) == ["CARE", "ADMIN"]

    def test_roles_list_claim(self):
        assert roles_from_claims({"roles": ["customer", "admin"]}) == ["CUSTOMER", "ADMIN"]

    def test_role_csv_claim(self):
        assert roles_from_claims({"role": "customer_care, storage_staff"}) == ["CUSTOMER_CARE", "STORAGE_STAFF"]

    def test_both_claims_are_merged(self):
        claims = {"role": "CUSTOMER", "roles": ["customer", "CONTENT_CREATOR"]}
        assert roles_from_claims(claims) == ["CUSTOMER", "CONTENT_CREATOR"]

    def test_missing_claims(self):
        assert roles_from_claims({}) == []


# ---------------------------------------------------------------------------
# TestRoleRequirement
# ---------------------------------------------------------------------------


class TestRoleRequirement:
    def test_admin_bypasses_any_requirement(self):
        req = RoleRequirement(("CUSTOMER",))
        assert role_requirement_satisfied(req, {"roles": ["admin"]})

    def test_overlap_passes(self):
        req = RoleRequirement(("ADMIN", "CUSTOMER_CARE"))
        assert role_requirement_satisfied(req, {"roles": ["CUSTOMER", "customer_care"]})

    def test_no_overlap_fails(self):
        req = RoleRequirement(("CUSTOMER_CARE",))
        assert not role_requirement_satisfied(req, {"roles": ["CUSTOMER"]})

    def test_no_roles_fails(self):
        assert not role_requirement_satisfied(RoleRequirement(("CUSTOMER",)), {})
