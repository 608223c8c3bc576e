import xml.etree.ElementTree as ET
from collections.abc import Callable

import pytest

import cppgen

TK = cppgen.TypeKind
CLASS_TYPES = {"isl_set", "isl_schedule_node"}
ENUMS = {"isl_dim_type"}


@pytest.mark.parametrize(
    ("spelling", "kind", "name", "normalized"),
    [
        ("isl_set *", TK.OBJECT, "isl_set", "isl_set *"),
        ("isl_set*", TK.OBJECT, "isl_set", "isl_set *"),
        ("struct isl_set *", TK.OTHER, "struct isl_set", "struct isl_set *"),
        ("isl_ctx *", TK.CTX, "isl_ctx", "isl_ctx *"),
        ("isl_bool", TK.BOOL, "isl_bool", "isl_bool"),
        ("isl_stat", TK.STAT, "isl_stat", "isl_stat"),
        ("enum isl_dim_type", TK.ENUM, "isl_dim_type", "enum isl_dim_type"),
        ("isl_dim_type", TK.ENUM, "isl_dim_type", "enum isl_dim_type"),
        ("unsigned  int", TK.INTEGER, "unsigned int", "unsigned int"),
        ("const char *", TK.STRING, "char", "const char *"),
        ("char*", TK.STRING, "char", "char *"),
        ("isl_set **", TK.OTHER, "isl_set", "isl_set **"),
        ("void", TK.OTHER, "void", "void"),
    ],
)
def test_resolve_type_categories(
    spelling: str, kind: cppgen.TypeKind, name: str, normalized: str
) -> None:
    ftype = cppgen.resolve_type(spelling, "isl_", CLASS_TYPES, ENUMS)

    assert ftype.kind is kind
    assert ftype.name == name
    assert ftype.spelling == normalized


def test_load_api_description_reads_fixture(sample_api: cppgen.ApiDescription) -> None:
    assert sample_api.prefix == "isl_"
    assert sample_api.namespace == "isl"
    assert set(sample_api.enums) == {"isl_dim_type", "isl_schedule_node_type"}
    assert list(sample_api.classes) == [
        "isl_basic_set",
        "isl_schedule_node",
        "isl_schedule_node_band",
        "isl_schedule_node_filter",
        "isl_set",
        "isl_union_set",
    ]

    set_class = sample_api.classes["isl_set"]
    assert set_class.superclasses == ("isl_union_set",)
    assert set_class.equality_function == "isl_set_is_equal"
    assert set_class.stringify_function == "isl_set_to_str"
    assert [c.name for c in set_class.constructors] == [
        "isl_set_from_basic_set",
        "isl_set_read_from_str",
    ]

    band = sample_api.classes["isl_schedule_node_band"]
    assert band.is_type_subclass
    assert band.type_name == "isl_schedule_node"
    assert band.subclass_tag_value == "isl_schedule_node_band"
    assert sample_api.classes["isl_schedule_node"].type_tag_function == (
        "isl_schedule_node_get_type"
    )


def test_load_api_description_reads_ownership_and_callbacks(
    sample_api: cppgen.ApiDescription,
) -> None:
    (foreach,) = sample_api.classes["isl_set"].methods["foreach_basic_set"]
    receiver, fn = foreach.parameters

    assert receiver.ownership is cppgen.Ownership.BORROWED
    assert fn.ownership is cppgen.Ownership.CALLBACK
    assert fn.type.kind is TK.CALLBACK
    assert fn.type.spelling == "isl_stat (*)(isl_basic_set *, void *)"
    assert fn.type.callback is not None
    assert fn.type.callback.return_type.kind is TK.STAT
    (arg,) = fn.type.callback.params
    assert arg.ownership is cppgen.Ownership.TRANSFERRED
    assert arg.type.name == "isl_basic_set"


def test_load_api_description_defaults_return_ownership(
    make_api_root: Callable[[str], ET.Element],
) -> None:
    root = make_api_root(
        '<class name="isl_set">'
        '<function name="isl_set_copy_name">'
        '<return type="char *"/>'
        '<param name="set" type="isl_set *" ownership="borrowed"/>'
        "</function>"
        "</class>"
    )

    api = cppgen.load_api_description(root)

    (function,) = api.classes["isl_set"].methods["copy_name"]
    assert function.return_ownership is cppgen.Ownership.TRANSFERRED
    assert function.return_type.kind is TK.STRING


def test_load_api_description_groups_bare_functions_by_method_name(
    make_api_root: Callable[[str], ET.Element],
) -> None:
    root = make_api_root(
        '<class name="isl_set">'
        '<function name="isl_set_union">'
        '<return type="isl_set *" ownership="transferred"/>'
        '<param name="set1" type="isl_set *" ownership="transferred"/>'
        '<param name="set2" type="isl_set *" ownership="transferred"/>'
        "</function>"
        "</class>"
    )

    api = cppgen.load_api_description(root)
    set_class = api.classes["isl_set"]
    (function,) = set_class.methods["union"]

    assert cppgen.method_name(set_class, function) == "unite"


@pytest.mark.parametrize(
    ("inner_xml", "fragment"),
    [
        ('<class type="isl_set"/>', "name"),
        (
            '<class name="isl_set"><function name="isl_set_f">'
            '<param name="set" type="isl_set *" ownership="borrowed"/>'
            "</function></class>",
            "<return>",
        ),
        (
            '<class name="isl_set"><function name="isl_set_f">'
            '<return type="isl_stat"/>'
            '<param name="set" type="isl_set *" ownership="stolen"/>'
            "</function></class>",
            "stolen",
        ),
        (
            '<class name="isl_set"><function name="isl_set_f">'
            '<return type="isl_stat"/>'
            '<param name="set" type="isl_set *"/>'
            "</function></class>",
            "ownership",
        ),
        (
            '<enum name="isl_fold"><enumerator name="isl_fold_min" value="min"/></enum>',
            "isl_fold_min",
        ),
        (
            '<class name="isl_set"><function name="isl_set_f">'
            '<return type="isl_stat"/>'
            '<param name="fn" kind="callback"/>'
            "</function></class>",
            "<callback>",
        ),
        (
            '<class name="isl_set"><function name="isl_set_f">'
            '<return type="isl_stat"/>'
            '<param name="o" type="isl_set *" ownership="callback"/>'
            "</function></class>",
            'kind="callback"',
        ),
        (
            '<class name="isl_set"><function name="isl_set_f">'
            '<return type="isl_stat"/>'
            '<param name="fn" kind="callback" ownership="borrowed">'
            '<callback><return type="isl_stat"/></callback></param>'
            "</function></class>",
            "'borrowed'",
        ),
    ],
)
def test_load_api_description_rejects_malformed_documents(
    inner_xml: str,
    fragment: str,
    make_api_root: Callable[[str], ET.Element],
) -> None:
    with pytest.raises(cppgen.ModelError) as exc_info:
        cppgen.load_api_description(make_api_root(inner_xml))

    assert exc_info.value.code == "INVALID_DESCRIPTION"
    assert fragment in exc_info.value.message


def test_load_api_description_requires_api_root() -> None:
    with pytest.raises(cppgen.ModelError) as exc_info:
        cppgen.load_api_description(ET.fromstring("<registry/>"))

    assert exc_info.value.code == "INVALID_DESCRIPTION"


def test_load_enums_accepts_hex_and_negative_values(
    make_api_root: Callable[[str], ET.Element],
) -> None:
    root = make_api_root(
        '<enum name="isl_flags">'
        '<enumerator name="isl_flags_none" value="-1"/>'
        '<enumerator name="isl_flags_all" value="0x10"/>'
        "</enum>"
    )

    enums = cppgen.load_enums(root)

    assert enums["isl_flags"].enumerators == (
        ("isl_flags_none", -1),
        ("isl_flags_all", 16),
    )


def test_load_enums_reads_leading_zero_as_octal(
    make_api_root: Callable[[str], ET.Element],
) -> None:
    root = make_api_root(
        '<enum name="isl_flags">'
        '<enumerator name="isl_flags_zero" value="0"/>'
        '<enumerator name="isl_flags_eight" value="010"/>'
        '<enumerator name="isl_flags_ten" value="10"/>'
        "</enum>"
    )

    enums = cppgen.load_enums(root)

    assert enums["isl_flags"].enumerators == (
        ("isl_flags_zero", 0),
        ("isl_flags_eight", 8),
        ("isl_flags_ten", 10),
    )


def test_load_api_description_reads_namespace_attribute() -> None:
    root = ET.fromstring('<api prefix="isl_" namespace="pet"/>')

    assert cppgen.load_api_description(root).namespace == "pet"


@pytest.mark.parametrize("namespace", ["../../escaped", "class", "a::b", ""])
def test_load_api_description_rejects_invalid_namespace(namespace: str) -> None:
    root = ET.fromstring(f'<api prefix="isl_" namespace="{namespace}"/>')

    with pytest.raises(cppgen.ModelError) as exc_info:
        cppgen.load_api_description(root)

    assert exc_info.value.code == "INVALID_DESCRIPTION"
    assert "namespace" in exc_info.value.message


def test_order_classes_puts_parents_before_subclasses() -> None:
    classes = [
        cppgen.ApiClass(name="isl_a_sub", type_name="isl_z"),
        cppgen.ApiClass(name="isl_b", type_name="isl_b"),
        cppgen.ApiClass(name="isl_z", type_name="isl_z"),
    ]

    ordered = [c.name for c in cppgen.order_classes(classes)]

    assert ordered == ["isl_b", "isl_z", "isl_a_sub"]


def test_order_classes_rejects_cycles() -> None:
    classes = [
        cppgen.ApiClass(name="isl_a", type_name="isl_b"),
        cppgen.ApiClass(name="isl_b", type_name="isl_a"),
    ]

    with pytest.raises(RuntimeError, match="cycle"):
        cppgen.order_classes(classes)


@pytest.mark.parametrize(
    ("classes", "code"),
    [
        (
            [cppgen.ApiClass(name="isl_for", type_name="isl_node", subclass_tag_value="1")],
            "MISSING_PARENT_CLASS",
        ),
        (
            [
                cppgen.ApiClass(name="isl_node", type_name="isl_node"),
                cppgen.ApiClass(name="isl_for", type_name="isl_node", subclass_tag_value="1"),
            ],
            "MISSING_TYPE_FUNCTION",
        ),
        (
            [
                cppgen.ApiClass(
                    name="isl_node", type_name="isl_node", type_tag_function="isl_node_type"
                ),
                cppgen.ApiClass(name="isl_for", type_name="isl_node"),
            ],
            "MISSING_TAG_VALUE",
        ),
        (
            [cppgen.ApiClass(name="isl_node", type_name="isl_node", subclass_tag_value="1")],
            "UNEXPECTED_TAG_VALUE",
        ),
        (
            [cppgen.ApiClass(name="isl_set", type_name="isl_set", superclasses=("isl_map",))],
            "UNKNOWN_SUPERCLASS",
        ),
        (
            [
                cppgen.ApiClass(
                    name="isl_set", type_name="isl_set", equality_function="isl_set_eq"
                )
            ],
            "INVALID_DESCRIPTION",
        ),
    ],
)
def test_validate_api_reports_structural_errors(
    classes: list[cppgen.ApiClass], code: str
) -> None:
    api = cppgen.ApiDescription(prefix="isl_", classes={c.name: c for c in classes})

    with pytest.raises(cppgen.ModelError) as exc_info:
        cppgen.validate_api(api)

    assert exc_info.value.code == code


def test_validate_api_accepts_fixture(sample_api: cppgen.ApiDescription) -> None:
    cppgen.validate_api(sample_api)


def test_model_error_rejects_unknown_code() -> None:
    with pytest.raises(ValueError):
        cppgen.ModelError("NOT_A_CODE", "message")
