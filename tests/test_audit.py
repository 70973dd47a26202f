import unittest

from factories import contract, employee, model, pk, relation, scalar, user_and_post
from schema_nf_audit import (
    CandidateKey,
    FdSource,
    FunctionalDependency,
    KeySource,
    NormalForm,
    ParsedInvariants,
    ReferentialAction,
    RuleCode,
    Severity,
    attribute_closure,
    check_1nf,
    check_2nf,
    check_3nf,
    check_fk_indexes,
    check_soft_delete,
    extract_candidate_keys,
    extract_contract,
    infer_functional_dependencies,
    invariants_to_fds,
    is_leftmost_prefix,
    is_superkey,
    parse_invariants_document,
    run_audit,
    to_json,
)


def declared(model_name, determinant, dependent):
    return FunctionalDependency(tuple(determinant), tuple(dependent), model_name, FdSource.INVARIANT)


class TestContractExtraction(unittest.TestCase):
    def test_models_and_fields_are_sorted(self):
        c = contract(
            model("Zeta", pk("id"), scalar("b"), scalar("a")),
            model("Alpha", pk("id")),
        )
        self.assertEqual([m.name for m in c.models], ["Alpha", "Zeta"])
        self.assertEqual(c.models[1].field_names, ["a", "b", "id"])

    def test_relation_fields_are_dropped_from_field_list(self):
        c = user_and_post()
        self.assertEqual(c.get_model("User").field_names, ["email", "id", "name"])
        self.assertEqual(c.get_model("Post").field_names, ["authorId", "id", "title"])

    def test_field_contract_flags(self):
        c = contract(model("Note", pk("id"), scalar("body", is_required=False), scalar("tags", is_list=True)))
        body = c.get_model("Note").fields[0]
        self.assertTrue(body.is_nullable)
        self.assertFalse(body.has_default)
        tags = c.get_model("Note").fields[2]
        self.assertTrue(tags.is_list)
        self.assertTrue(c.get_model("Note").fields[1].has_default)

    def test_composite_primary_key_wins_over_identity_marker(self):
        c = contract(model("Link", pk("id"), scalar("a", "Int"), scalar("b", "Int"), primary_key=["b", "a"]))
        key = c.get_model("Link").primary_key
        self.assertEqual(key.fields, ("b", "a"))
        self.assertTrue(key.is_composite)

    def test_single_identity_marker_and_missing_key(self):
        c = contract(model("A", pk("id")), model("B", scalar("x")))
        self.assertEqual(c.get_model("A").primary_key.fields, ("id",))
        self.assertFalse(c.get_model("A").primary_key.is_composite)
        self.assertIsNone(c.get_model("B").primary_key)

    def test_unique_constraints_merge_and_sort(self):
        c = contract(
            model(
                "Account",
                pk("id"),
                scalar("email", is_unique=True),
                scalar("a"),
                scalar("b"),
                named_unique={"account_ab": ["a", "b"]},
            )
        )
        uniques = c.get_model("Account").unique_constraints
        self.assertEqual([u.fields for u in uniques], [("a", "b"), ("email",)])
        self.assertEqual(uniques[0].name, "account_ab")
        self.assertTrue(uniques[0].is_composite)
        self.assertIsNone(uniques[1].name)
        self.assertFalse(uniques[1].is_composite)

    def test_foreign_keys_default_to_cascade(self):
        c = contract(
            model(
                "Comment",
                pk("id"),
                scalar("postId", "Int"),
                scalar("userId", "Int"),
                relation("user", "User", ["userId"], ["id"], on_delete="SetNull", on_update="Bogus"),
                relation("post", "Post", ["postId"], ["id"]),
            )
        )
        fks = c.get_model("Comment").foreign_keys
        self.assertEqual([fk.fields for fk in fks], [("postId",), ("userId",)])
        self.assertEqual(fks[0].on_delete, ReferentialAction.CASCADE)
        self.assertEqual(fks[0].on_update, ReferentialAction.CASCADE)
        self.assertEqual(fks[1].referenced_model, "User")
        self.assertEqual(fks[1].on_delete, ReferentialAction.SET_NULL)
        self.assertEqual(fks[1].on_update, ReferentialAction.CASCADE)

    def test_back_relation_without_field_lists_is_not_a_foreign_key(self):
        c = user_and_post()
        self.assertEqual(c.get_model("User").foreign_keys, ())
        self.assertEqual(len(c.get_model("Post").foreign_keys), 1)

    def test_extraction_is_deterministic_regardless_of_input_order(self):
        user, post = (
            model("User", pk("id"), scalar("email", is_unique=True)),
            model("Post", pk("id"), scalar("authorId", "Int"), relation("author", "User", ["authorId"], ["id"])),
        )
        first = run_audit(extract_contract([user, post]), no_timestamp=True)
        second = run_audit(extract_contract([post, user]), no_timestamp=True)
        self.assertEqual(to_json(first), to_json(second))


class TestFunctionalDependencies(unittest.TestCase):
    def test_pk_unique_and_fk_dependencies(self):
        fds = infer_functional_dependencies(user_and_post())
        self.assertIn(FunctionalDependency(("id",), ("email", "name"), "User", FdSource.PK), fds)
        self.assertIn(FunctionalDependency(("email",), ("id", "name"), "User", FdSource.UNIQUE), fds)
        self.assertIn(FunctionalDependency(("authorId",), ("id",), "Post", FdSource.FK), fds)
        self.assertEqual(len(fds), 4)

    def test_all_key_join_table_has_no_pk_dependency(self):
        c = contract(
            model(
                "PostTag",
                scalar("postId", "Int"),
                scalar("tagId", "Int"),
                relation("post", "Post", ["postId"], ["id"]),
                relation("tag", "Tag", ["tagId"], ["id"]),
                primary_key=["postId", "tagId"],
            )
        )
        fds = infer_functional_dependencies(c)
        self.assertEqual({fd.source for fd in fds}, {FdSource.FK})

    def test_closure_is_transitive(self):
        fds = [declared("M", ["a"], ["b"]), declared("M", ["b"], ["c"]), declared("M", ["c", "d"], ["e"])]
        self.assertEqual(attribute_closure(["a"], fds, "M"), {"a", "b", "c"})
        self.assertEqual(attribute_closure(["a", "d"], fds, "M"), {"a", "b", "c", "d", "e"})

    def test_closure_ignores_foreign_keys_and_other_models(self):
        fds = [
            FunctionalDependency(("authorId",), ("id",), "Post", FdSource.FK),
            declared("Other", ["authorId"], ["title"]),
        ]
        self.assertEqual(attribute_closure(["authorId"], fds, "Post"), {"authorId"})

    def test_closure_monotonic_and_idempotent(self):
        fds = infer_functional_dependencies(user_and_post()) + [declared("User", ["name"], ["email"])]
        small = attribute_closure(["name"], fds, "User")
        large = attribute_closure(["name", "id"], fds, "User")
        self.assertTrue(small.issubset(large))
        self.assertEqual(attribute_closure(small, fds, "User"), small)
        self.assertEqual(attribute_closure(large, fds, "User"), large)

    def test_superkey(self):
        c = user_and_post()
        fds = infer_functional_dependencies(c)
        fields = c.get_model("User").field_names
        self.assertTrue(is_superkey(fields, fields, [], "User"))
        self.assertTrue(is_superkey(["email"], fields, fds, "User"))
        self.assertFalse(is_superkey(["name"], fields, fds, "User"))


class TestCandidateKeys(unittest.TestCase):
    def test_pk_then_uniques(self):
        keys = extract_candidate_keys(user_and_post(), "User")
        self.assertEqual(
            keys,
            [CandidateKey(("id",), "User", KeySource.PK), CandidateKey(("email",), "User", KeySource.UNIQUE)],
        )

    def test_unknown_model_yields_nothing(self):
        self.assertEqual(extract_candidate_keys(user_and_post(), "Missing"), [])


class TestFirstNormalForm(unittest.TestCase):
    def test_all_three_heuristics(self):
        c = contract(
            model(
                "Contact",
                pk("id"),
                scalar("phone1"),
                scalar("phone2"),
                scalar("tagIds"),
                scalar("data", "Json"),
            )
        )
        findings = check_1nf(c)
        self.assertEqual(
            [f.rule for f in findings],
            [
                RuleCode.NF1_LIST_IN_STRING_SUSPECTED,
                RuleCode.NF1_REPEATING_GROUP_SUSPECTED,
                RuleCode.NF1_JSON_RELATION_SUSPECTED,
            ],
        )
        self.assertEqual(findings[0].field, "tagIds")
        self.assertEqual(findings[0].severity, Severity.WARNING)
        self.assertIsNone(findings[1].field)
        self.assertIn("phone1, phone2", findings[1].message)
        self.assertEqual(findings[2].severity, Severity.INFO)
        self.assertEqual(findings[2].normal_form, NormalForm.NF1)

    def test_list_suffix_is_case_insensitive_and_string_only(self):
        c = contract(model("Item", pk("id"), scalar("ALLOWED_VALUES"), scalar("roleIds", "Int"), scalar("csv")))
        self.assertEqual([f.field for f in check_1nf(c)], ["ALLOWED_VALUES", "csv"])

    def test_repeating_group_needs_matching_types(self):
        c = contract(model("Item", pk("id"), scalar("addr1"), scalar("addr2", "Int"), scalar("note3")))
        self.assertEqual(check_1nf(c), [])


class TestSecondNormalForm(unittest.TestCase):
    def order_item(self, *extra):
        return contract(
            model(
                "OrderItem",
                scalar("orderId", "Int"),
                scalar("productId", "Int"),
                *extra,
                relation("order", "Order", ["orderId"], ["id"]),
                relation("product", "Product", ["productId"], ["id"]),
                primary_key=["orderId", "productId"],
            )
        )

    def test_partial_dependency_and_join_table_attributes(self):
        c = self.order_item(scalar("quantity", "Int"), scalar("productName"))
        findings = check_2nf(c, infer_functional_dependencies(c))
        partial = [f for f in findings if f.rule == RuleCode.NF2_PARTIAL_DEPENDENCY_SUSPECTED]
        self.assertEqual([f.field for f in partial], ["productName", "quantity", "productName", "quantity"])
        join = [f for f in findings if f.rule == RuleCode.NF2_JOIN_TABLE_DUPLICATED_ATTR_SUSPECTED]
        self.assertEqual(len(join), 1)
        self.assertIn("productName, quantity", join[0].message)
        self.assertEqual(findings[-1], join[0])

    def test_pure_join_table_is_clean(self):
        c = self.order_item()
        self.assertEqual(check_2nf(c, infer_functional_dependencies(c)), [])

    def test_single_column_key_is_skipped(self):
        c = user_and_post()
        self.assertEqual(check_2nf(c, infer_functional_dependencies(c)), [])

    def test_fk_spanning_whole_key_is_not_partial(self):
        c = contract(
            model(
                "Assignment",
                scalar("a", "Int"),
                scalar("b", "Int"),
                scalar("note"),
                relation("pair", "Pair", ["a", "b"], ["x", "y"]),
                primary_key=["a", "b"],
            )
        )
        findings = check_2nf(c, infer_functional_dependencies(c))
        self.assertEqual([f.rule for f in findings], [RuleCode.NF2_JOIN_TABLE_DUPLICATED_ATTR_SUSPECTED])


class TestThirdNormalForm(unittest.TestCase):
    def test_transitive_dependency(self):
        c = contract(employee())
        fds = infer_functional_dependencies(c) + [declared("Employee", ["departmentId"], ["deptName", "deptLocation"])]
        findings = check_3nf(c, fds)
        self.assertEqual([f.field for f in findings], ["deptName", "deptLocation"])
        for f in findings:
            self.assertEqual(f.rule, RuleCode.NF3_VIOLATION)
            self.assertEqual(f.severity, Severity.ERROR)
            self.assertEqual(f.normal_form, NormalForm.NF3)

    def test_dependent_in_candidate_key_is_bcnf_only(self):
        c = contract(employee(scalar("badgeNumber"), unique=[["badgeNumber", "deptName"]]))
        fds = infer_functional_dependencies(c) + [declared("Employee", ["departmentId"], ["deptName", "deptLocation"])]
        findings = {f.field: f for f in check_3nf(c, fds)}
        self.assertEqual(findings["deptName"].rule, RuleCode.BCNF_VIOLATION)
        self.assertEqual(findings["deptName"].severity, Severity.INFO)
        self.assertEqual(findings["deptName"].normal_form, NormalForm.BCNF)
        self.assertEqual(findings["deptLocation"].rule, RuleCode.NF3_VIOLATION)
        self.assertEqual(findings["deptLocation"].severity, Severity.ERROR)

    def test_superkey_determinant_is_fine(self):
        c = contract(employee(scalar("code", is_unique=True)))
        fds = infer_functional_dependencies(c) + [
            declared("Employee", ["id"], ["deptName"]),
            declared("Employee", ["code"], ["deptLocation"]),
        ]
        self.assertEqual(check_3nf(c, fds), [])

    def test_declared_dependency_can_make_a_superkey(self):
        c = contract(employee())
        fds = infer_functional_dependencies(c) + [declared("Employee", ["deptName"], ["id"])]
        self.assertEqual(check_3nf(c, fds), [])

    def test_trivial_and_unknown_dependents_are_skipped(self):
        c = contract(employee())
        fds = infer_functional_dependencies(c) + [
            declared("Employee", ["departmentId"], ["departmentId", "ghost"]),
            declared("Nobody", ["a"], ["b"]),
        ]
        self.assertEqual(check_3nf(c, fds), [])

    def test_schema_dependencies_alone_raise_nothing(self):
        c = contract(employee())
        self.assertEqual(check_3nf(c, infer_functional_dependencies(c)), [])


class TestSoftDelete(unittest.TestCase):
    def rules(self, *fields, unique=()):
        return [f.rule for f in check_soft_delete(contract(model("Doc", pk("id"), *fields, unique=unique)))]

    def test_deleted_at_without_deleted_by(self):
        self.assertEqual(
            self.rules(scalar("deleted_at", "DateTime", is_required=False)),
            [RuleCode.SOFTDELETE_AT_WITHOUT_BY],
        )

    def test_deleted_by_without_deleted_at(self):
        self.assertEqual(self.rules(scalar("deletedBy")), [RuleCode.SOFTDELETE_BY_WITHOUT_AT])

    def test_both_or_neither(self):
        self.assertEqual(self.rules(scalar("deletedAt", "DateTime"), scalar("deletedBy")), [])
        self.assertEqual(self.rules(scalar("title")), [])

    def test_deleted_at_must_be_datetime(self):
        self.assertEqual(self.rules(scalar("deleted_at")), [])
        self.assertEqual(
            self.rules(scalar("deleted_at"), scalar("deleted_by")),
            [RuleCode.SOFTDELETE_BY_WITHOUT_AT],
        )

    def test_unique_constraints_must_include_deleted_at(self):
        findings = check_soft_delete(
            contract(
                model(
                    "Doc",
                    pk("id"),
                    scalar("slug", is_unique=True),
                    scalar("owner"),
                    scalar("deleted_at", "DateTime"),
                    scalar("deleted_by"),
                    unique=[["owner", "deleted_at"]],
                )
            )
        )
        self.assertEqual([f.rule for f in findings], [RuleCode.SOFTDELETE_MISSING_IN_UNIQUE])
        self.assertEqual(findings[0].field, "deleted_at")
        self.assertIn("(slug)", findings[0].message)
        self.assertIsNotNone(findings[0].fix)


class TestForeignKeyIndexes(unittest.TestCase):
    def test_leftmost_prefix(self):
        self.assertTrue(is_leftmost_prefix(["a"], ["a", "b"]))
        self.assertTrue(is_leftmost_prefix(["a", "b"], ["a", "b"]))
        self.assertFalse(is_leftmost_prefix(["b"], ["a", "b"]))
        self.assertFalse(is_leftmost_prefix(["a", "b"], ["a"]))

    def test_uncovered_foreign_key(self):
        findings = check_fk_indexes(user_and_post())
        self.assertEqual(len(findings), 1)
        self.assertEqual((findings[0].model, findings[0].field), ("Post", "authorId"))
        self.assertEqual(findings[0].severity, Severity.INFO)
        self.assertEqual(findings[0].normal_form, NormalForm.SCHEMA)

    def test_covered_by_unique_prefix_only(self):
        def post(unique):
            return contract(
                model(
                    "Post",
                    pk("id"),
                    scalar("authorId", "Int"),
                    scalar("slug"),
                    relation("author", "User", ["authorId"], ["id"]),
                    unique=unique,
                )
            )

        self.assertEqual(check_fk_indexes(post([["authorId", "slug"]])), [])
        self.assertEqual(len(check_fk_indexes(post([["slug", "authorId"]]))), 1)

    def test_composite_foreign_key_has_no_field(self):
        c = contract(
            model(
                "Line",
                pk("id"),
                scalar("a", "Int"),
                scalar("b", "Int"),
                relation("pair", "Pair", ["a", "b"], ["x", "y"]),
                unique=[["a"]],
            )
        )
        findings = check_fk_indexes(c)
        self.assertEqual(len(findings), 1)
        self.assertIsNone(findings[0].field)


class TestAuditOrchestration(unittest.TestCase):
    def test_single_missing_index_finding(self):
        result = run_audit(user_and_post(), no_timestamp=True)
        self.assertEqual([(f.rule, f.model, f.field) for f in result.findings],
                         [(RuleCode.FK_MISSING_INDEX, "Post", "authorId")])
        self.assertEqual(result.metadata.model_count, 2)
        self.assertEqual(result.metadata.finding_count, 1)
        self.assertIsNone(result.metadata.timestamp)

    def test_timestamp_is_utc_iso(self):
        result = run_audit(user_and_post())
        self.assertTrue(result.metadata.timestamp.endswith("Z"))

    def test_invariants_feed_3nf_and_validation(self):
        invariants = parse_invariants_document(
            {"Employee": {"functionalDependencies": [{"determinant": ["departmentId"],
                                                      "dependent": ["deptName", "deptLocation"]}]}}
        )
        result = run_audit(contract(employee()), invariants, schema_path="schema.json", no_timestamp=True)
        rules = [f.rule for f in result.findings]
        self.assertEqual(
            rules,
            [RuleCode.NF3_VIOLATION, RuleCode.NF3_VIOLATION, RuleCode.INVARIANT_DETERMINANT_NOT_ENFORCED],
        )
        self.assertEqual(result.metadata.schema_path, "schema.json")

    def test_suppression_is_scoped_to_rule_and_model(self):
        c = extract_contract(
            [
                employee(scalar("badgeNumber"), unique=[["badgeNumber", "deptName"]]),
                model("Post", pk("id"), scalar("authorId", "Int"), relation("author", "User", ["authorId"], ["id"])),
            ]
        )
        invariants = ParsedInvariants(
            invariants=parse_invariants_document(
                {"Employee": {"functionalDependencies": [{"determinant": ["departmentId"],
                                                          "dependent": ["deptName", "deptLocation"]}]}}
            ).invariants,
            suppress=("NF3_VIOLATION:Employee",),
        )
        result = run_audit(c, invariants, no_timestamp=True)
        rules = {(f.rule, f.model) for f in result.findings}
        self.assertNotIn((RuleCode.NF3_VIOLATION, "Employee"), rules)
        self.assertIn((RuleCode.BCNF_VIOLATION, "Employee"), rules)
        self.assertIn((RuleCode.FK_MISSING_INDEX, "Post"), rules)
        self.assertEqual(result.metadata.finding_count, len(result.findings))

    def test_repeat_runs_are_byte_identical(self):
        invariants = {"Employee": {"functionalDependencies": [{"determinant": ["deptName"],
                                                               "dependent": ["deptLocation"]}]}}
        outputs = {
            to_json(run_audit(contract(employee()), parse_invariants_document(invariants), no_timestamp=True))
            for _ in range(3)
        }
        self.assertEqual(len(outputs), 1)

    def test_invariant_fds_are_tagged(self):
        fds = invariants_to_fds(
            parse_invariants_document({"A": {"functionalDependencies": [{"determinant": ["x"], "dependent": ["y"]}]}})
            .invariants
        )
        self.assertEqual(fds, [FunctionalDependency(("x",), ("y",), "A", FdSource.INVARIANT)])


if __name__ == "__main__":
    unittest.main()
