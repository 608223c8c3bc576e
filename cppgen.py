"""Object-oriented C++ bindings generator for C libraries.

Reads an extracted API description of an object-based C library (opaque
classes, ownership-annotated functions, callbacks, type-tag subclasses) and
emits a header-only C++ interface that either reports failures as C++
exceptions or passes the library's status codes through.

Usage:
    python cppgen.py --api isl-api.xml --output-dir include/isl --mode both
"""

import argparse
import re
import xml.etree.ElementTree as ET
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

DEFAULT_OUTPUT_DIR = Path("include")


# ===--- Emission modes ---=== #


class EmissionMode(Enum):
    EXCEPTIONS = "exceptions"
    STATUS_CODES = "no-exceptions"


MODE_CHOICES: dict[str, tuple[EmissionMode, ...]] = {
    "exceptions": (EmissionMode.EXCEPTIONS,),
    "no-exceptions": (EmissionMode.STATUS_CODES,),
    "both": (EmissionMode.EXCEPTIONS, EmissionMode.STATUS_CODES),
}
DEFAULT_MODE = "exceptions"


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    api_xml: Path
    output_dir: Path
    modes: tuple[EmissionMode, ...]
    namespace: str | None
    prologue: Path | None


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    api_xml: Path


VALID_ERROR_CODES = {
    "INVALID_MODE",
    "INVALID_NAMESPACE",
    "CONFLICT_GENERATE_DISCOVERY",
    "PATH_NOT_FOUND",
}

CPP_KEYWORDS = frozenset(
    {
        "alignas", "alignof", "and", "and_eq", "asm", "auto", "bitand",
        "bitor", "bool", "break", "case", "catch", "char", "class", "compl",
        "const", "constexpr", "const_cast", "continue", "decltype", "default",
        "delete", "do", "double", "dynamic_cast", "else", "enum", "explicit",
        "export", "extern", "false", "float", "for", "friend", "goto", "if",
        "inline", "int", "long", "mutable", "namespace", "new", "noexcept",
        "not", "not_eq", "nullptr", "operator", "or", "or_eq", "private",
        "protected", "public", "register", "reinterpret_cast", "return",
        "short", "signed", "sizeof", "static", "static_assert", "static_cast",
        "struct", "switch", "template", "this", "throw", "true", "try",
        "typedef", "typeid", "typename", "union", "unsigned", "using",
        "virtual", "void", "volatile", "while", "xor", "xor_eq",
    }
)
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def parse_modes(raw: str) -> tuple[EmissionMode, ...]:
    if raw not in MODE_CHOICES:
        raise ConfigError(
            "INVALID_MODE",
            f"Unsupported emission mode: {raw}",
            "Use one of: exceptions, no-exceptions, both.",
        )
    return MODE_CHOICES[raw]


def validate_namespace(name: str) -> str:
    if _IDENT_RE.match(name) and name not in CPP_KEYWORDS:
        return name
    raise ConfigError(
        "INVALID_NAMESPACE",
        f"Invalid C++ namespace name: {name}",
        "Namespace names must be plain C++ identifiers that are not keywords.",
    )


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate object-oriented C++ bindings for a C library"
    )

    parser.add_argument("--api", type=Path, default=None)
    parser.add_argument("--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR)
    parser.add_argument("--mode", type=str, default=None)
    parser.add_argument("--namespace", type=str, default=None)
    parser.add_argument("--prologue", type=Path, default=None)

    parser.add_argument("--list-classes", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    has_generate_input = bool(args.mode or args.namespace or args.prologue)

    if has_generate_input and args.list_classes:
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "Generate flags cannot be combined with --list-classes.",
            "Drop --mode/--namespace/--prologue or run without --list-classes.",
        )

    api_xml = validate_path_exists(
        args.api,
        "--api",
        "Pass the extracted API description: --api /path/to/api.xml",
    )

    if args.list_classes:
        return DiscoveryConfig(command="list-classes", api_xml=api_xml)

    modes = parse_modes(args.mode if args.mode is not None else DEFAULT_MODE)
    namespace = (
        validate_namespace(args.namespace) if args.namespace is not None else None
    )
    prologue = (
        validate_path_exists(args.prologue, "--prologue")
        if args.prologue is not None
        else None
    )

    return GenerateConfig(
        api_xml=api_xml,
        output_dir=args.output_dir,
        modes=modes,
        namespace=namespace,
        prologue=prologue,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Constants ---=== #

INTEGER_TYPES = frozenset(
    {
        "int",
        "unsigned",
        "unsigned int",
        "long",
        "unsigned long",
        "long long",
        "unsigned long long",
        "short",
        "unsigned short",
        "double",
        "size_t",
        "int32_t",
        "uint32_t",
        "int64_t",
        "uint64_t",
    }
)

STRING_TYPES = frozenset({"char *", "const char *"})

RESERVED_RENAMES: dict[str, str] = {
    "union": "unite",
    "delete": "del",
    "and": "and_",
    "or": "or_",
    "not": "not_",
    "xor": "xor_",
    "template": "template_",
    "new": "new_",
}

INCLUDES: tuple[str, ...] = (
    "<cstdlib>",
    "<exception>",
    "<functional>",
    "<ostream>",
    "<string>",
    "<utility>",
)


# ===--- Model errors ---=== #

VALID_MODEL_ERROR_CODES = {
    "UNSUPPORTED_TYPE",
    "UNSUPPORTED_CALLBACK",
    "MISSING_PARENT_CLASS",
    "MISSING_TYPE_FUNCTION",
    "MISSING_TAG_VALUE",
    "UNEXPECTED_TAG_VALUE",
    "UNKNOWN_SUPERCLASS",
    "INVALID_DESCRIPTION",
}


class ModelError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_MODEL_ERROR_CODES:
            raise ValueError(f"Unknown model error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


# ===--- Data classes ---=== #


class Ownership(Enum):
    BORROWED = "borrowed"
    TRANSFERRED = "transferred"
    CALLBACK = "callback"


class TypeKind(Enum):
    OBJECT = "object"
    BOOL = "bool"
    STAT = "stat"
    ENUM = "enum"
    CTX = "ctx"
    INTEGER = "integer"
    STRING = "string"
    CALLBACK = "callback"
    OTHER = "other"


class FunctionKind(Enum):
    CONSTRUCTOR = "constructor"
    STATIC_METHOD = "static"
    MEMBER_METHOD = "member"


@dataclass(frozen=True)
class ForeignType:
    kind: TypeKind
    name: str
    spelling: str
    callback: "CallbackType | None" = None


@dataclass(frozen=True)
class Parameter:
    name: str
    type: ForeignType
    ownership: Ownership | None = None


@dataclass(frozen=True)
class CallbackType:
    """Signature of a C callback, without its trailing `void *user` argument."""

    return_type: ForeignType
    params: tuple[Parameter, ...]


@dataclass(frozen=True)
class ApiFunction:
    name: str
    return_type: ForeignType
    parameters: tuple[Parameter, ...]
    return_ownership: Ownership | None = None


@dataclass(frozen=True)
class ApiEnum:
    name: str
    enumerators: tuple[tuple[str, int], ...]


@dataclass(frozen=True)
class ApiClass:
    name: str
    type_name: str
    methods: dict[str, tuple[ApiFunction, ...]] = field(default_factory=dict)
    constructors: tuple[ApiFunction, ...] = ()
    type_tag_function: str | None = None
    subclass_tag_value: str | None = None
    superclasses: tuple[str, ...] = ()
    equality_function: str | None = None
    stringify_function: str | None = None

    @property
    def is_type_subclass(self) -> bool:
        """True for classes that share their parent's storage type."""
        return self.name != self.type_name


@dataclass(frozen=True)
class ApiDescription:
    prefix: str
    classes: dict[str, ApiClass]
    enums: dict[str, ApiEnum] = field(default_factory=dict)
    namespace: str | None = None


@dataclass(frozen=True)
class EmitOptions:
    """Per-run emission settings threaded through every generator call.

    Attributes:
        mode: Exceptions or status codes. Fixed for a whole output file.
        prefix: Foreign name prefix, e.g. "isl_".
        namespace: Target C++ namespace. None derives it from the prefix.
    """

    mode: EmissionMode = EmissionMode.EXCEPTIONS
    prefix: str = "isl_"
    namespace: str | None = None

    @property
    def cpp_namespace(self) -> str:
        return self.namespace or self.prefix.rstrip("_")

    @property
    def exceptions(self) -> bool:
        return self.mode is EmissionMode.EXCEPTIONS


# ===--- Naming ---=== #


def strip_prefix(name: str, prefix: str) -> str:
    if name.startswith(prefix):
        return name[len(prefix) :]
    return name


def rename_method(name: str) -> str:
    return RESERVED_RENAMES.get(name, name)


def method_name(clazz: ApiClass, function: ApiFunction) -> str:
    return rename_method(strip_prefix(function.name, f"{clazz.name}_"))


def cpp_class_name(clazz: ApiClass, options: EmitOptions) -> str:
    return strip_prefix(clazz.name, options.prefix)


def qualified_name(name: str, options: EmitOptions) -> str:
    return f"{options.cpp_namespace}::{strip_prefix(name, options.prefix)}"


def format_c_decl(spelling: str, name: str) -> str:
    if spelling.endswith("*"):
        return f"{spelling}{name}"
    return f"{spelling} {name}"


def _null_input_throw(options: EmitOptions) -> str:
    return (
        f"throw {options.cpp_namespace}::exception::create("
        f'{options.prefix}error_invalid, "NULL input", __FILE__, __LINE__);'
    )


def _last_error_throw(options: EmitOptions, ctx: str | None) -> str:
    if ctx is None:
        return (
            f"throw {options.cpp_namespace}::exception::create("
            f'{options.prefix}error_unknown, "operation failed", __FILE__, __LINE__);'
        )
    return (
        f"throw {options.cpp_namespace}::exception::create_from_last_error({ctx});"
    )


# ===--- Type mapping ---=== #


def map_type(ftype: ForeignType, options: EmitOptions) -> str:
    kind = ftype.kind
    if kind is TypeKind.OBJECT:
        return qualified_name(ftype.name, options)
    if kind is TypeKind.BOOL:
        return "bool" if options.exceptions else f"{options.cpp_namespace}::boolean"
    if kind is TypeKind.STAT:
        return "void" if options.exceptions else f"{options.cpp_namespace}::stat"
    if kind is TypeKind.ENUM:
        return qualified_name(ftype.name, options)
    if kind is TypeKind.CTX:
        return f"{options.cpp_namespace}::ctx"
    if kind is TypeKind.INTEGER:
        return ftype.spelling
    if kind is TypeKind.STRING:
        return "std::string"
    if kind is TypeKind.CALLBACK and ftype.callback is not None:
        return map_callback_type(ftype.callback, options)
    raise ModelError(
        "UNSUPPORTED_TYPE",
        f"Unsupported type: {ftype.spelling}",
        "Only library objects, bool/stat, enums, ctx, integers, strings "
        "and callbacks can appear in wrapped signatures.",
    )


def map_callback_type(callback: CallbackType, options: EmitOptions) -> str:
    ret = map_type(callback.return_type, options)
    args = ", ".join(map_type(p.type, options) for p in callback.params)
    return f"std::function<{ret}({args})>"


def enumerator_names(api_enum: ApiEnum, prefix: str) -> list[str]:
    names = [name for name, _value in api_enum.enumerators]
    if len(names) > 1:
        common = names[0].split("_")
        for name in names[1:]:
            parts = name.split("_")
            size = 0
            while size < min(len(common), len(parts)) and common[size] == parts[size]:
                size += 1
            common = common[:size]
        stem = "_".join(common) + "_" if common else ""
        # Each enumerator must keep at least one segment of its own.
        if any(len(name) <= len(stem) for name in names):
            stem = prefix
    else:
        stem = prefix

    result = []
    for name in names:
        short = strip_prefix(name, stem)
        if short[:1].isdigit():
            short = f"_{short}"
        elif short in CPP_KEYWORDS:
            short = f"{short}_"
        result.append(short)
    return result


def enum_discriminants(api_enum: ApiEnum, prefix: str) -> dict[str, int]:
    names = enumerator_names(api_enum, prefix)
    return {
        short: value for short, (_name, value) in zip(names, api_enum.enumerators)
    }


def map_enum(api_enum: ApiEnum, options: EmitOptions) -> list[str]:
    lines = []
    lines.append(f"enum class {strip_prefix(api_enum.name, options.prefix)} {{")
    for short, value in enum_discriminants(api_enum, options.prefix).items():
        lines.append(f"  {short} = {value},")
    lines.append("};")
    lines.append("")
    return lines


# ===--- Method classification ---=== #


def classify_function(clazz: ApiClass, function: ApiFunction) -> FunctionKind:
    if any(function.name == ctor.name for ctor in clazz.constructors):
        return FunctionKind.CONSTRUCTOR
    params = function.parameters
    if (
        params
        and params[0].type.kind is TypeKind.OBJECT
        and params[0].type.name == clazz.type_name
    ):
        return FunctionKind.MEMBER_METHOD
    return FunctionKind.STATIC_METHOD


def _direct_supertypes(clazz: ApiClass) -> list[str]:
    parents = list(clazz.superclasses)
    if clazz.is_type_subclass:
        parents.append(clazz.type_name)
    return parents


def is_subclass(api: ApiDescription, type_name: str, clazz: ApiClass) -> bool:
    """Return True if the class called type_name is a proper subtype of clazz."""
    start = api.classes.get(type_name)
    if start is None:
        return False
    visited = {start.name}
    frontier = _direct_supertypes(start)
    while frontier:
        name = frontier.pop()
        if name == clazz.name:
            return True
        if name in visited:
            continue
        visited.add(name)
        parent = api.classes.get(name)
        if parent is not None:
            frontier.extend(_direct_supertypes(parent))
    return False


def is_implicit_conversion(
    api: ApiDescription, clazz: ApiClass, constructor: ApiFunction
) -> bool:
    if len(constructor.parameters) != 1:
        return False
    ftype = constructor.parameters[0].type
    if ftype.kind is not TypeKind.OBJECT:
        return False
    return is_subclass(api, ftype.name, clazz)


# ===--- Signature synthesis ---=== #


def format_param_decl(param: Parameter, options: EmitOptions) -> str:
    # bool/stat mapping is a result-type rule; stat has no argument form.
    if param.type.kind is TypeKind.STAT:
        raise ModelError(
            "UNSUPPORTED_TYPE",
            f"Unsupported parameter type: {param.type.spelling} {param.name}",
            "Status values can only appear as return types.",
        )
    cpp = map_type(param.type, options)
    by_reference = param.type.kind in (TypeKind.STRING, TypeKind.CALLBACK) or (
        param.ownership is Ownership.BORROWED and param.type.kind is not TypeKind.CTX
    )
    if by_reference:
        return f"const {cpp} &{param.name}"
    return f"{cpp} {param.name}"


def narrowed_return_type(clazz: ApiClass, function: ApiFunction) -> str | None:
    """Return the subclass name a parent-typed result is narrowed to, if any."""
    ret = function.return_type
    if (
        clazz.is_type_subclass
        and ret.kind is TypeKind.OBJECT
        and ret.name == clazz.type_name
    ):
        return clazz.name
    return None


def format_return_type(
    clazz: ApiClass, function: ApiFunction, options: EmitOptions
) -> str:
    narrowed = narrowed_return_type(clazz, function)
    if narrowed is not None:
        return qualified_name(narrowed, options)
    return map_type(function.return_type, options)


def format_method_header(
    api: ApiDescription,
    clazz: ApiClass,
    function: ApiFunction,
    name: str,
    kind: FunctionKind,
    options: EmitOptions,
    is_declaration: bool,
) -> str:
    cppname = cpp_class_name(clazz, options)
    params = function.parameters
    if kind is FunctionKind.MEMBER_METHOD:
        params = params[1:]

    parts = []
    if is_declaration and kind is FunctionKind.STATIC_METHOD:
        parts.append("static ")
    parts.append("inline ")
    if is_declaration and kind is FunctionKind.CONSTRUCTOR:
        if is_implicit_conversion(api, clazz, function):
            parts.append("/* implicit */ ")
        else:
            parts.append("explicit ")

    if kind is not FunctionKind.CONSTRUCTOR:
        parts.append(f"{format_return_type(clazz, function, options)} ")

    if not is_declaration:
        parts.append(f"{cppname}::")
    parts.append(cppname if kind is FunctionKind.CONSTRUCTOR else name)

    param_decls = ", ".join(format_param_decl(p, options) for p in params)
    parts.append(f"({param_decls})")

    if kind is FunctionKind.MEMBER_METHOD:
        parts.append(" const")
    return "".join(parts)


# ===--- Callback marshalling ---=== #


def _callback_argument(param: Parameter, index: int, options: EmitOptions) -> str:
    arg = f"arg_{index}"
    kind = param.type.kind
    if kind is TypeKind.OBJECT:
        if param.ownership is Ownership.TRANSFERRED:
            return f"{options.cpp_namespace}::manage({arg})"
        return f"{options.cpp_namespace}::manage_copy({arg})"
    if kind is TypeKind.ENUM:
        return f"static_cast<{map_type(param.type, options)}>({arg})"
    if kind is TypeKind.CTX:
        return f"{options.cpp_namespace}::ctx({arg})"
    if kind in (TypeKind.INTEGER, TypeKind.STRING):
        return arg
    raise ModelError(
        "UNSUPPORTED_CALLBACK",
        f"Unsupported callback argument {param.name}: {param.type.spelling}",
    )


def _wrapped_callback_call(
    call: str, rtype: ForeignType, options: EmitOptions
) -> list[str]:
    kind = rtype.kind
    stat = rtype.name
    if kind not in (TypeKind.STAT, TypeKind.BOOL, TypeKind.OBJECT, TypeKind.INTEGER):
        raise ModelError(
            "UNSUPPORTED_CALLBACK",
            f"Unsupported callback return type: {rtype.spelling}",
            "Callbacks may return stat, bool, an object or an integer.",
        )

    lines = []
    if not options.exceptions:
        lines.append(f"    auto ret = {call};")
        if kind is TypeKind.STAT:
            lines.append(f"    return {stat}(ret);")
        elif kind is TypeKind.INTEGER:
            lines.append("    return ret;")
        else:
            lines.append("    return ret.release();")
        return lines

    lines.append("    try {")
    if kind is TypeKind.STAT:
        lines.append(f"      {call};")
        lines.append(f"      return {stat}_ok;")
    elif kind is TypeKind.BOOL:
        lines.append(f"      auto ret = {call};")
        lines.append(f"      return ret ? {rtype.name}_true : {rtype.name}_false;")
    elif kind is TypeKind.OBJECT:
        lines.append(f"      auto ret = {call};")
        lines.append("      return ret.release();")
    else:
        lines.append(f"      return {call};")
    lines.append("    } catch (...) {")
    lines.append("      data->eptr = std::current_exception();")
    if kind is TypeKind.STAT:
        lines.append(f"      return {stat}_error;")
    elif kind is TypeKind.BOOL:
        lines.append(f"      return {rtype.name}_error;")
    elif kind is TypeKind.OBJECT:
        lines.append("      return NULL;")
    else:
        lines.append("      return -1;")
    lines.append("    }")
    return lines


def emit_callback_local(param: Parameter, options: EmitOptions) -> list[str]:
    callback = param.type.callback
    if callback is None:
        raise ModelError(
            "UNSUPPORTED_CALLBACK",
            f"Callback parameter {param.name} has no signature",
        )
    name = param.name
    user_index = len(callback.params)

    c_args = [
        format_c_decl(p.type.spelling, f"arg_{i}")
        for i, p in enumerate(callback.params)
    ]
    c_args.append(f"void *arg_{user_index}")
    call_args = ", ".join(
        _callback_argument(p, i, options) for i, p in enumerate(callback.params)
    )
    call = f"(*data->func)({call_args})"

    lines = []
    lines.append(f"  struct {name}_data {{")
    lines.append(f"    const {map_callback_type(callback, options)} *func;")
    if options.exceptions:
        lines.append("    std::exception_ptr eptr;")
    lines.append(f"  }} {name}_data = {{ &{name} }};")
    lines.append(
        f"  auto {name}_lambda = []({', '.join(c_args)}) -> "
        f"{callback.return_type.spelling} {{"
    )
    lines.append(
        f"    auto *data = static_cast<struct {name}_data *>(arg_{user_index});"
    )
    lines.extend(_wrapped_callback_call(call, callback.return_type, options))
    lines.append("  };")
    return lines


def callback_params(function: ApiFunction) -> list[Parameter]:
    return [p for p in function.parameters if p.type.kind is TypeKind.CALLBACK]


def emit_failure_check(
    function: ApiFunction, options: EmitOptions, ctx: str | None
) -> list[str]:
    """Return the post-call checks: callback rethrows, then the error result."""
    if not options.exceptions:
        return []
    lines = []
    for param in callback_params(function):
        lines.append(f"  if ({param.name}_data.eptr)")
        lines.append(f"    std::rethrow_exception({param.name}_data.eptr);")

    kind = function.return_type.kind
    if kind in (TypeKind.STAT, TypeKind.BOOL):
        lines.append("  if (res < 0)")
        lines.append(f"    {_last_error_throw(options, ctx)}")
    elif kind in (TypeKind.OBJECT, TypeKind.STRING):
        lines.append("  if (!res)")
        lines.append(f"    {_last_error_throw(options, ctx)}")
    return lines


# ===--- Method bodies ---=== #


def format_call_argument(param: Parameter, is_receiver: bool = False) -> str:
    kind = param.type.kind
    if kind is TypeKind.ENUM:
        return f"static_cast<enum {param.type.name}>({param.name})"
    if kind is TypeKind.STRING:
        return f"{param.name}.c_str()"
    if kind is TypeKind.CALLBACK:
        return f"{param.name}_lambda, &{param.name}_data"
    if kind in (TypeKind.OBJECT, TypeKind.CTX):
        target = "" if is_receiver else f"{param.name}."
        if param.ownership is Ownership.TRANSFERRED:
            return f"{target}copy()" if is_receiver else f"{target}release()"
        return f"{target}get()"
    return param.name


def _object_params(function: ApiFunction, kind: FunctionKind) -> list[Parameter]:
    params = function.parameters
    if kind is FunctionKind.MEMBER_METHOD:
        params = params[1:]
    return [p for p in params if p.type.kind is TypeKind.OBJECT]


def _needs_saved_ctx(function: ApiFunction, kind: FunctionKind) -> bool:
    if kind is FunctionKind.MEMBER_METHOD:
        return False
    params = function.parameters
    if params and params[0].type.kind is TypeKind.CTX:
        return False
    return bool(_object_params(function, kind))


def method_ctx_source(function: ApiFunction, kind: FunctionKind) -> str | None:
    """Return the C++ expression that yields the library context, if any."""
    if kind is FunctionKind.MEMBER_METHOD:
        return "get_ctx()"
    params = function.parameters
    if params and params[0].type.kind is TypeKind.CTX:
        return params[0].name
    if _needs_saved_ctx(function, kind):
        return "ctx"
    return None


def emit_validity_check(
    function: ApiFunction, kind: FunctionKind, options: EmitOptions
) -> list[str]:
    if not options.exceptions:
        return []
    checks = []
    if kind is FunctionKind.MEMBER_METHOD:
        checks.append("!ptr")
    checks.extend(f"{p.name}.is_null()" for p in _object_params(function, kind))
    if not checks:
        return []
    return [f"  if ({' || '.join(checks)})", f"    {_null_input_throw(options)}"]


def emit_save_ctx(
    function: ApiFunction, kind: FunctionKind, options: EmitOptions
) -> list[str]:
    if not options.exceptions or not _needs_saved_ctx(function, kind):
        return []
    first = _object_params(function, kind)[0]
    return [f"  auto ctx = {first.name}.get_ctx();"]


def emit_on_error_continue(ctx: str | None, options: EmitOptions) -> list[str]:
    if not options.exceptions or ctx is None:
        return []
    return [
        f"  options_scoped_set_on_error saved_on_error({ctx}, "
        f"{options.prefix.upper()}ON_ERROR_CONTINUE);"
    ]


def emit_return(
    clazz: ApiClass,
    function: ApiFunction,
    kind: FunctionKind,
    options: EmitOptions,
) -> list[str]:
    if kind is FunctionKind.CONSTRUCTOR:
        return ["  ptr = res;"]

    ret = function.return_type
    rkind = ret.kind
    ns = options.cpp_namespace
    if rkind is TypeKind.OBJECT:
        factory = (
            "manage_copy" if function.return_ownership is Ownership.BORROWED else "manage"
        )
        narrowed = narrowed_return_type(clazz, function)
        if narrowed is not None:
            target = qualified_name(narrowed, options)
            return [f"  return {factory}(res).as<{target}>();"]
        return [f"  return {factory}(res);"]
    if rkind is TypeKind.BOOL:
        return ["  return res;"] if options.exceptions else ["  return manage(res);"]
    if rkind is TypeKind.STAT:
        return ["  return;"] if options.exceptions else [f"  return {ns}::stat(res);"]
    if rkind is TypeKind.STRING:
        lines = ["  std::string tmp(res);"]
        if function.return_ownership is Ownership.TRANSFERRED:
            lines.append("  free(res);")
        lines.append("  return tmp;")
        return lines
    if rkind is TypeKind.ENUM:
        return [f"  return static_cast<{map_type(ret, options)}>(res);"]
    if rkind is TypeKind.CTX:
        return [f"  return {ns}::ctx(res);"]
    if rkind is TypeKind.INTEGER:
        return ["  return res;"]
    raise ModelError(
        "UNSUPPORTED_TYPE",
        f"Unsupported return type of {function.name}: {ret.spelling}",
    )


def emit_method_impl(
    api: ApiDescription,
    clazz: ApiClass,
    name: str,
    function: ApiFunction,
    options: EmitOptions,
) -> list[str]:
    kind = classify_function(clazz, function)
    ctx = method_ctx_source(function, kind)

    args = []
    for i, param in enumerate(function.parameters):
        is_receiver = i == 0 and kind is FunctionKind.MEMBER_METHOD
        args.append(format_call_argument(param, is_receiver))

    lines = []
    lines.append(
        format_method_header(api, clazz, function, name, kind, options, False)
    )
    lines.append("{")
    lines.extend(emit_validity_check(function, kind, options))
    lines.extend(emit_save_ctx(function, kind, options))
    lines.extend(emit_on_error_continue(ctx, options))
    for param in callback_params(function):
        lines.extend(emit_callback_local(param, options))
    lines.append(f"  auto res = {function.name}({', '.join(args)});")
    lines.extend(emit_failure_check(function, options, ctx))
    lines.extend(emit_return(clazz, function, kind, options))
    lines.append("}")
    lines.append("")
    return lines


def emit_method_decl(
    api: ApiDescription,
    clazz: ApiClass,
    name: str,
    function: ApiFunction,
    options: EmitOptions,
) -> str:
    kind = classify_function(clazz, function)
    header = format_method_header(api, clazz, function, name, kind, options, True)
    return f"  {header};"


def iter_methods(clazz: ApiClass):
    for name in sorted(clazz.methods):
        for function in clazz.methods[name]:
            yield rename_method(name), function


def find_method(clazz: ApiClass, function_name: str) -> tuple[str, ApiFunction] | None:
    for name, function in iter_methods(clazz):
        if function.name == function_name:
            return name, function
    return None


# ===--- Class declarations ---=== #


def _bool_type(options: EmitOptions) -> str:
    return "bool" if options.exceptions else f"{options.cpp_namespace}::boolean"


def parent_class(api: ApiDescription, clazz: ApiClass) -> ApiClass | None:
    if not clazz.is_type_subclass:
        return None
    return api.classes.get(clazz.type_name)


def emit_forward_decls(classes: list[ApiClass], options: EmitOptions) -> list[str]:
    lines = ["// forward declarations"]
    for clazz in classes:
        lines.append(f"class {cpp_class_name(clazz, options)};")
    lines.append("")
    return lines


def _factory_decls(clazz: ApiClass, options: EmitOptions) -> list[str]:
    qualified = qualified_name(clazz.name, options)
    return [
        f"inline {qualified} manage({clazz.type_name} *ptr)",
        f"inline {qualified} manage_copy({clazz.type_name} *ptr)",
    ]


def emit_class_decl(
    api: ApiDescription, clazz: ApiClass, options: EmitOptions
) -> list[str]:
    cppname = cpp_class_name(clazz, options)
    qualified = qualified_name(clazz.name, options)
    parent = parent_class(api, clazz)
    is_root = parent is None
    ns = options.cpp_namespace

    lines = [f"// declarations for {qualified}"]
    if is_root:
        lines.extend(f"{decl};" for decl in _factory_decls(clazz, options))
        lines.append("")

    if parent is not None:
        super_name = qualified_name(parent.name, options)
        lines.append(f"class {cppname} : public {super_name} {{")
        lines.append(
            f"  friend {_bool_type(options)} {super_name}::isa<{qualified}>();"
        )
        lines.append(f"  friend {qualified} {super_name}::as<{qualified}>();")
        lines.append(f"  static const auto type = {clazz.subclass_tag_value};")
        lines.append("")
    else:
        lines.append(f"class {cppname} {{")
        lines.extend(f"  friend {decl};" for decl in _factory_decls(clazz, options))
        lines.append("")

    lines.append("protected:")
    if is_root:
        lines.append(f"  {clazz.type_name} *ptr = nullptr;")
        lines.append("")
    lines.append(f"  inline explicit {cppname}({clazz.type_name} *ptr);")
    lines.append("")

    lines.append("public:")
    lines.append(f"  inline /* implicit */ {cppname}();")
    lines.append(f"  inline /* implicit */ {cppname}(const {qualified} &obj);")
    for ctor in clazz.constructors:
        lines.append(emit_method_decl(api, clazz, cppname, ctor, options))
    lines.append(f"  inline {qualified} &operator=({qualified} obj);")
    if is_root:
        lines.append(f"  inline ~{cppname}();")
        lines.append(f"  inline {clazz.type_name} *copy() const &;")
        lines.append(f"  inline {clazz.type_name} *copy() && = delete;")
        lines.append(f"  inline {clazz.type_name} *get() const;")
        lines.append(f"  inline {clazz.type_name} *release();")
        lines.append("  inline bool is_null() const;")
        lines.append("  inline explicit operator bool() const;")
    if clazz.type_tag_function is not None:
        lines.append(f"  template <class T> inline {_bool_type(options)} isa();")
        lines.append("  template <class T> inline T as();")
    lines.append(f"  inline {ns}::ctx get_ctx() const;")
    if clazz.stringify_function is not None:
        lines.append("  inline std::string to_str() const;")
    for name, function in iter_methods(clazz):
        lines.append(emit_method_decl(api, clazz, name, function, options))
    lines.append(f"  typedef {clazz.type_name} *{options.prefix}ptr_t;")
    lines.append("};")
    lines.append("")
    return lines


# ===--- Class implementations ---=== #


def _emit_factory_impls(clazz: ApiClass, options: EmitOptions) -> list[str]:
    cppname = cpp_class_name(clazz, options)
    manage_decl, manage_copy_decl = _factory_decls(clazz, options)
    lines = [manage_decl, "{"]
    if options.exceptions:
        lines.append("  if (!ptr)")
        lines.append(f"    {_null_input_throw(options)}")
    lines.append(f"  return {cppname}(ptr);")
    lines.append("}")
    lines.append("")

    lines.append(manage_copy_decl)
    lines.append("{")
    if options.exceptions:
        lines.append("  if (!ptr)")
        lines.append(f"    {_null_input_throw(options)}")
        lines.append(f"  auto ctx = {clazz.type_name}_get_ctx(ptr);")
    lines.append(f"  ptr = {clazz.type_name}_copy(ptr);")
    if options.exceptions:
        lines.append("  if (!ptr)")
        lines.append(f"    {_last_error_throw(options, 'ctx')}")
    lines.append(f"  return {cppname}(ptr);")
    lines.append("}")
    lines.append("")
    return lines


def _emit_ctor_impls(
    clazz: ApiClass, parent: ApiClass | None, options: EmitOptions
) -> list[str]:
    cppname = cpp_class_name(clazz, options)
    qualified = qualified_name(clazz.name, options)
    lines = []
    if parent is None:
        lines.append(f"inline {cppname}::{cppname}()")
        lines.append("    : ptr(nullptr) {}")
        lines.append("")
        lines.append(f"inline {cppname}::{cppname}(const {qualified} &obj)")
        lines.append("    : ptr(obj.copy())")
        lines.append("{")
        if options.exceptions:
            lines.append("  if (obj.ptr && !ptr)")
            lines.append(
                f"    {_last_error_throw(options, f'{clazz.type_name}_get_ctx(obj.ptr)')}"
            )
        lines.append("}")
        lines.append("")
        lines.append(f"inline {cppname}::{cppname}({clazz.type_name} *ptr)")
        lines.append("    : ptr(ptr) {}")
        lines.append("")
        return lines

    super_name = qualified_name(parent.name, options)
    lines.append(f"inline {cppname}::{cppname}()")
    lines.append(f"    : {super_name}() {{}}")
    lines.append("")
    lines.append(f"inline {cppname}::{cppname}(const {qualified} &obj)")
    lines.append(f"    : {super_name}(obj) {{}}")
    lines.append("")
    lines.append(f"inline {cppname}::{cppname}({clazz.type_name} *ptr)")
    lines.append(f"    : {super_name}(ptr) {{}}")
    lines.append("")
    return lines


def _emit_ptr_impls(clazz: ApiClass, options: EmitOptions) -> list[str]:
    cppname = cpp_class_name(clazz, options)
    c_type = clazz.type_name
    return [
        f"inline {cppname}::~{cppname}() {{",
        "  if (ptr)",
        f"    {c_type}_free(ptr);",
        "}",
        "",
        f"inline {c_type} *{cppname}::copy() const & {{",
        f"  return {c_type}_copy(ptr);",
        "}",
        "",
        f"inline {c_type} *{cppname}::get() const {{",
        "  return ptr;",
        "}",
        "",
        f"inline {c_type} *{cppname}::release() {{",
        f"  {c_type} *tmp = ptr;",
        "  ptr = nullptr;",
        "  return tmp;",
        "}",
        "",
        f"inline bool {cppname}::is_null() const {{",
        "  return ptr == nullptr;",
        "}",
        "",
        f"inline {cppname}::operator bool() const {{",
        "  return !is_null();",
        "}",
        "",
    ]


def _emit_operator_impls(clazz: ApiClass, options: EmitOptions) -> list[str]:
    qualified = qualified_name(clazz.name, options)
    lines = []
    if clazz.stringify_function is not None:
        lines.append(
            f"inline std::ostream &operator<<(std::ostream &os, const {qualified} &obj)"
        )
        lines.append("{")
        lines.append("  os << obj.to_str();")
        lines.append("  return os;")
        lines.append("}")
        lines.append("")
    if clazz.equality_function is not None:
        found = find_method(clazz, clazz.equality_function)
        if found is None:
            raise ModelError(
                "INVALID_DESCRIPTION",
                f"Equality function {clazz.equality_function} is not a method "
                f"of {clazz.name}",
            )
        name, function = found
        ret = map_type(function.return_type, options)
        lines.append(
            f"inline {ret} operator==(const {qualified} &C1, const {qualified} &C2)"
        )
        lines.append("{")
        lines.append(f"  return C1.{name}(C2);")
        lines.append("}")
        lines.append("")
    return lines


def _emit_str_impl(clazz: ApiClass, options: EmitOptions) -> list[str]:
    cppname = cpp_class_name(clazz, options)
    return [
        f"inline std::string {cppname}::to_str() const {{",
        f"  char *Tmp = {clazz.stringify_function}(get());",
        "  if (!Tmp)",
        '    return "";',
        "  std::string S(Tmp);",
        "  free(Tmp);",
        "  return S;",
        "}",
        "",
    ]


def _emit_downcast_impls(clazz: ApiClass, options: EmitOptions) -> list[str]:
    cppname = cpp_class_name(clazz, options)
    lines = ["template <class T>"]
    lines.append(f"inline {_bool_type(options)} {cppname}::isa()")
    lines.append("{")
    lines.append("  if (is_null())")
    if options.exceptions:
        lines.append(f"    {_null_input_throw(options)}")
    else:
        lines.append(f"    return {options.cpp_namespace}::boolean();")
    lines.append(f"  return {clazz.type_tag_function}(get()) == T::type;")
    lines.append("}")
    lines.append("")
    lines.append("template <class T>")
    lines.append(f"inline T {cppname}::as()")
    lines.append("{")
    if not options.exceptions:
        lines.append("  if (is_null())")
        lines.append("    return T();")
    lines.append("  return isa<T>() ? T(copy()) : T();")
    lines.append("}")
    lines.append("")
    return lines


def emit_class_impl(
    api: ApiDescription, clazz: ApiClass, options: EmitOptions
) -> list[str]:
    cppname = cpp_class_name(clazz, options)
    qualified = qualified_name(clazz.name, options)
    parent = parent_class(api, clazz)
    ns = options.cpp_namespace

    lines = [f"// implementations for {qualified}"]
    if parent is None:
        lines.extend(_emit_factory_impls(clazz, options))
    lines.extend(_emit_ctor_impls(clazz, parent, options))
    for ctor in clazz.constructors:
        lines.extend(emit_method_impl(api, clazz, cppname, ctor, options))

    lines.append(f"inline {qualified} &{cppname}::operator=({qualified} obj) {{")
    lines.append("  std::swap(this->ptr, obj.ptr);")
    lines.append("  return *this;")
    lines.append("}")
    lines.append("")

    if parent is None:
        lines.extend(_emit_ptr_impls(clazz, options))
    lines.extend(_emit_operator_impls(clazz, options))
    if clazz.stringify_function is not None:
        lines.extend(_emit_str_impl(clazz, options))
    if clazz.type_tag_function is not None:
        lines.extend(_emit_downcast_impls(clazz, options))

    lines.append(f"inline {ns}::ctx {cppname}::get_ctx() const {{")
    lines.append(f"  return {ns}::ctx({clazz.type_name}_get_ctx(ptr));")
    lines.append("}")
    lines.append("")

    for name, function in iter_methods(clazz):
        lines.extend(emit_method_impl(api, clazz, name, function, options))
    return lines


# ===--- Model validation and ordering ---=== #


def validate_api(api: ApiDescription) -> None:
    for clazz in api.classes.values():
        if clazz.is_type_subclass:
            parent = api.classes.get(clazz.type_name)
            if parent is None:
                raise ModelError(
                    "MISSING_PARENT_CLASS",
                    f"{clazz.name} is stored as {clazz.type_name}, "
                    "which is not a described class",
                    f"Add a class named {clazz.type_name} to the description.",
                )
            if parent.type_tag_function is None:
                raise ModelError(
                    "MISSING_TYPE_FUNCTION",
                    f"{parent.name} has subclass {clazz.name} but no type function",
                    f'Set type-function="{parent.name}_get_type" on {parent.name}.',
                )
            if parent.is_type_subclass:
                raise ModelError(
                    "INVALID_DESCRIPTION",
                    f"{clazz.name} derives from type-tag subclass {parent.name}",
                    "Type-tag subclasses must derive from a root class.",
                )
            if clazz.subclass_tag_value is None:
                raise ModelError(
                    "MISSING_TAG_VALUE",
                    f"Type-tag subclass {clazz.name} has no tag value",
                )
        elif clazz.subclass_tag_value is not None:
            raise ModelError(
                "UNEXPECTED_TAG_VALUE",
                f"Root class {clazz.name} carries tag {clazz.subclass_tag_value}",
                "Only classes stored as another class's type take a tag.",
            )

        for super_name in clazz.superclasses:
            if super_name not in api.classes:
                raise ModelError(
                    "UNKNOWN_SUPERCLASS",
                    f"Unknown superclass {super_name} of {clazz.name}",
                )

        if (
            clazz.equality_function is not None
            and find_method(clazz, clazz.equality_function) is None
        ):
            raise ModelError(
                "INVALID_DESCRIPTION",
                f"Equality function {clazz.equality_function} is not a method "
                f"of {clazz.name}",
            )


def order_classes(classes: list[ApiClass]) -> list[ApiClass]:
    class_map = {c.name: c for c in classes}
    in_degree = {name: 0 for name in class_map}
    adj = defaultdict(list)
    for clazz in classes:
        if clazz.is_type_subclass and clazz.type_name in class_map:
            adj[clazz.type_name].append(clazz.name)
            in_degree[clazz.name] += 1

    queue = [name for name in class_map if in_degree[name] == 0]
    result = []
    while queue:
        queue.sort()
        node = queue.pop(0)
        result.append(node)
        for neighbor in adj[node]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(result) != len(class_map):
        remaining = set(class_map) - set(result)
        raise RuntimeError(f"Dependency cycle in classes: {remaining}")

    return [class_map[name] for name in result]


# ===--- Generation ---=== #


def generate_bindings(api: ApiDescription, options: EmitOptions) -> list[str]:
    validate_api(api)
    classes = order_classes(list(api.classes.values()))
    ns = options.cpp_namespace

    lines = [f"namespace {ns} {{"]
    if not options.exceptions:
        lines.append("inline namespace noexceptions {")
    lines.append("")
    lines.extend(emit_forward_decls(classes, options))

    if api.enums:
        lines.append("// enumerations")
        for name in sorted(api.enums):
            lines.extend(map_enum(api.enums[name], options))

    for clazz in classes:
        lines.extend(emit_class_decl(api, clazz, options))
    for clazz in classes:
        lines.extend(emit_class_impl(api, clazz, options))

    if not options.exceptions:
        lines.append("} // namespace noexceptions")
    lines.append(f"}} // namespace {ns}")
    return lines


# ===--- Description loading ---=== #


def _normalize_spelling(spelling: str) -> str:
    base = " ".join(spelling.replace("*", " ").split())
    stars = spelling.count("*")
    return f"{base} {'*' * stars}" if stars else base


def resolve_type(
    spelling: str,
    prefix: str,
    class_types: set[str],
    enum_names: set[str],
) -> ForeignType:
    text = _normalize_spelling(spelling)
    is_pointer = text.endswith("*")
    base = text.rstrip("*").strip()
    bare = base.removeprefix("const ").removeprefix("enum ").strip()

    if text in STRING_TYPES:
        return ForeignType(TypeKind.STRING, "char", text)
    if is_pointer and text.count("*") == 1:
        if bare in class_types:
            return ForeignType(TypeKind.OBJECT, bare, f"{bare} *")
        if bare == f"{prefix}ctx":
            return ForeignType(TypeKind.CTX, bare, f"{bare} *")
    if not is_pointer:
        if bare == f"{prefix}bool":
            return ForeignType(TypeKind.BOOL, bare, bare)
        if bare == f"{prefix}stat":
            return ForeignType(TypeKind.STAT, bare, bare)
        if bare in enum_names:
            return ForeignType(TypeKind.ENUM, bare, f"enum {bare}")
        if bare in INTEGER_TYPES:
            return ForeignType(TypeKind.INTEGER, bare, bare)
    return ForeignType(TypeKind.OTHER, bare, text)


def _parse_ownership(el: ET.Element, where: str) -> Ownership | None:
    raw = el.get("ownership")
    if raw is None:
        return None
    try:
        return Ownership(raw)
    except ValueError as err:
        raise ModelError(
            "INVALID_DESCRIPTION",
            f"Invalid ownership '{raw}' on {where}",
            "Use one of: borrowed, transferred, callback.",
        ) from err


def _require_attr(el: ET.Element, attr: str, where: str) -> str:
    value = el.get(attr)
    if not value:
        raise ModelError(
            "INVALID_DESCRIPTION",
            f"<{el.tag}> in {where} is missing the {attr} attribute",
        )
    return value


def _parse_callback(el: ET.Element, scope, where: str) -> CallbackType:
    ret_el = el.find("return")
    if ret_el is None:
        raise ModelError(
            "INVALID_DESCRIPTION", f"Callback in {where} has no <return> element"
        )
    return_type = resolve_type(_require_attr(ret_el, "type", where), *scope)
    params = tuple(_parse_param(p, scope, where) for p in el.findall("param"))
    return CallbackType(return_type=return_type, params=params)


def _parse_param(el: ET.Element, scope, where: str) -> Parameter:
    name = _require_attr(el, "name", where)
    ownership = _parse_ownership(el, f"{where}({name})")

    if el.get("kind") == "callback":
        cb_el = el.find("callback")
        if cb_el is None:
            raise ModelError(
                "INVALID_DESCRIPTION",
                f"Callback parameter {name} of {where} has no <callback> element",
            )
        if ownership not in (None, Ownership.CALLBACK):
            raise ModelError(
                "INVALID_DESCRIPTION",
                f"Callback parameter {name} of {where} has ownership "
                f"'{ownership.value}'",
                'Callback parameters only take ownership="callback".',
            )
        callback = _parse_callback(cb_el, scope, f"{where}({name})")
        c_args = ", ".join([p.type.spelling for p in callback.params] + ["void *"])
        spelling = f"{callback.return_type.spelling} (*)({c_args})"
        ftype = ForeignType(TypeKind.CALLBACK, name, spelling, callback)
        return Parameter(name, ftype, ownership or Ownership.CALLBACK)

    if ownership is Ownership.CALLBACK:
        raise ModelError(
            "INVALID_DESCRIPTION",
            f'Parameter {name} of {where} has ownership "callback" '
            'but is not declared with kind="callback"',
            'Use ownership="borrowed" or ownership="transferred".',
        )
    ftype = resolve_type(_require_attr(el, "type", where), *scope)
    if ftype.kind is TypeKind.OBJECT and ownership is None:
        raise ModelError(
            "INVALID_DESCRIPTION",
            f"Object parameter {name} of {where} has no ownership",
            'Annotate it with ownership="borrowed" or ownership="transferred".',
        )
    return Parameter(name, ftype, ownership)


def parse_function(el: ET.Element, scope) -> ApiFunction:
    name = _require_attr(el, "name", "class")
    ret_el = el.find("return")
    if ret_el is None:
        raise ModelError("INVALID_DESCRIPTION", f"{name} has no <return> element")
    return_type = resolve_type(_require_attr(ret_el, "type", name), *scope)
    return_ownership = _parse_ownership(ret_el, f"{name} return")
    if return_ownership is None and return_type.kind in (
        TypeKind.OBJECT,
        TypeKind.STRING,
    ):
        return_ownership = Ownership.TRANSFERRED
    params = tuple(_parse_param(p, scope, name) for p in el.findall("param"))
    return ApiFunction(name, return_type, params, return_ownership)


def _split_names(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part for part in re.split(r"[\s,]+", raw) if part)


_C_OCTAL_RE = re.compile(r"^-?0[0-7]+$")


def parse_c_integer(raw: str) -> int:
    """Parse an integer literal the way C does (leading 0 means octal)."""
    if _C_OCTAL_RE.match(raw):
        return int(raw, 8)
    return int(raw, 0)


def load_enums(root: ET.Element) -> dict[str, ApiEnum]:
    enums = {}
    for enum_el in root.findall("enum"):
        name = _require_attr(enum_el, "name", "api")
        values = []
        for item in enum_el.findall("enumerator"):
            item_name = _require_attr(item, "name", name)
            raw_value = _require_attr(item, "value", name)
            try:
                values.append((item_name, parse_c_integer(raw_value)))
            except ValueError as err:
                raise ModelError(
                    "INVALID_DESCRIPTION",
                    f"Enumerator {item_name} has non-integer value '{raw_value}'",
                ) from err
        enums[name] = ApiEnum(name, tuple(values))
    return enums


def load_class(el: ET.Element, scope) -> ApiClass:
    name = _require_attr(el, "name", "api")
    type_name = el.get("type") or name

    constructors = tuple(parse_function(c, scope) for c in el.findall("constructor"))

    methods: dict[str, list[ApiFunction]] = defaultdict(list)
    for method_el in el.findall("method"):
        method = _require_attr(method_el, "name", name)
        for fn_el in method_el.findall("function"):
            methods[method].append(parse_function(fn_el, scope))
    for fn_el in el.findall("function"):
        function = parse_function(fn_el, scope)
        methods[strip_prefix(function.name, f"{name}_")].append(function)

    return ApiClass(
        name=name,
        type_name=type_name,
        methods={key: tuple(fns) for key, fns in methods.items()},
        constructors=constructors,
        type_tag_function=el.get("type-function"),
        subclass_tag_value=el.get("tag"),
        superclasses=_split_names(el.get("superclasses")),
        equality_function=el.get("equality"),
        stringify_function=el.get("stringify"),
    )


def load_api_description(root: ET.Element) -> ApiDescription:
    if root.tag != "api":
        raise ModelError(
            "INVALID_DESCRIPTION",
            f"Expected an <api> root element, found <{root.tag}>",
        )
    prefix = _require_attr(root, "prefix", "document")
    enums = load_enums(root)
    class_els = root.findall("class")
    class_types = {el.get("type") or el.get("name", "") for el in class_els}
    # Every storage type must be known before the first signature is resolved.
    scope = (prefix, class_types, set(enums))

    namespace = root.get("namespace")
    if namespace is not None:
        try:
            validate_namespace(namespace)
        except ConfigError as err:
            raise ModelError(
                "INVALID_DESCRIPTION", err.message, err.suggestion
            ) from err

    classes = [load_class(el, scope) for el in class_els]
    ordered = order_classes(classes)
    return ApiDescription(
        prefix=prefix,
        classes={c.name: c for c in ordered},
        enums=enums,
        namespace=namespace,
    )


# ===--- Discovery commands ---=== #


@dataclass(frozen=True)
class ClassSummary:
    """One row of the --list-classes table.

    Attributes:
        name: Foreign class name, e.g. "isl_set".
        parent: Foreign name of the type-tag parent, or None for root classes.
        constructor_count: Declared constructors, implicit ones included.
        method_count: Method overloads across all logical method names.
        callback_count: Callback parameters across constructors and methods.
        has_type_tag: True when the class can be downcast with isa/as.
    """

    name: str
    parent: str | None
    constructor_count: int
    method_count: int
    callback_count: int
    has_type_tag: bool


def _all_functions(clazz: ApiClass) -> list[ApiFunction]:
    functions = list(clazz.constructors)
    for overloads in clazz.methods.values():
        functions.extend(overloads)
    return functions


def gather_class_summaries(api: ApiDescription) -> list[ClassSummary]:
    summaries = []
    for clazz in api.classes.values():
        summaries.append(
            ClassSummary(
                name=clazz.name,
                parent=clazz.type_name if clazz.is_type_subclass else None,
                constructor_count=len(clazz.constructors),
                method_count=sum(len(fns) for fns in clazz.methods.values()),
                callback_count=sum(
                    len(callback_params(f)) for f in _all_functions(clazz)
                ),
                has_type_tag=clazz.type_tag_function is not None,
            )
        )
    return summaries


def format_classes_table(summaries: list[ClassSummary], prefix: str) -> str:
    """Return the complete --list-classes output as a single string.

    Output format:

        3 classes (prefix isl_):

          set                    root          2 ctors  5 methods  1 callbacks
          schedule_node          root          0 ctors  1 methods  isa/as
          schedule_node_band     schedule_node 0 ctors  2 methods

    Names are shown without the prefix. The name column width is derived
    from the widest name in summaries.

    Args:
        summaries: Class summaries in description order.
        prefix: Foreign prefix stripped from displayed names.

    Returns:
        Formatted multi-line string including trailing newline.
    """
    lines = [f"{len(summaries)} classes (prefix {prefix}):", ""]
    if not summaries:
        lines.append("")
        return "\n".join(lines)

    names = [strip_prefix(s.name, prefix) for s in summaries]
    parents = [strip_prefix(s.parent, prefix) if s.parent else "root" for s in summaries]
    name_width = max(len(n) for n in names)
    parent_width = max(len(p) for p in parents)

    for s, name, parent in zip(summaries, names, parents):
        row = (
            f"  {name.ljust(name_width)}  {parent.ljust(parent_width)}  "
            f"{s.constructor_count:>2} ctors  {s.method_count:>3} methods"
        )
        if s.callback_count:
            row += f"  {s.callback_count} callbacks"
        if s.has_type_tag:
            row += "  isa/as"
        lines.append(row)

    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    """Execute the discovery command specified in config.

    Loads the API description and prints the requested listing to stdout.
    Description errors propagate to main(), which reports them.

    Args:
        config: Validated DiscoveryConfig from build_config().
    """
    root = ET.parse(config.api_xml).getroot()
    api = load_api_description(root)

    if config.command == "list-classes":
        output = format_classes_table(gather_class_summaries(api), api.prefix)
        print(output, end="")


# ===--- Writer ---=== #


@dataclass(frozen=True)
class WriteConfig:
    """Generation metadata embedded in every file preamble.

    Attributes:
        source_label: Name of the description the bindings came from,
            e.g. "isl-api.xml".
        mode: Emission mode of the file being written.
        namespace: Target C++ namespace, also used for the filename and
            the include guard.
    """

    source_label: str
    mode: EmissionMode
    namespace: str


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing a single generated header.

    Attributes:
        filename: Filename written, e.g. "isl.h" or "isl-noexceptions.h".
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written UTF-8 content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


@dataclass(frozen=True)
class PackageWriteResult:
    """Result of writing every requested header in one run.

    Attributes:
        output_dir: Directory all files were written to.
        files: One FileWriteResult per file written, in write order.
    """

    output_dir: Path
    files: tuple[FileWriteResult, ...]

    @property
    def total_lines(self) -> int:
        """Sum of line_count across all written files."""
        return sum(f.line_count for f in self.files)


_HEADER_BORDER: str = "// x-------------------------------------------x //"


def output_filename(namespace: str, mode: EmissionMode) -> str:
    if mode is EmissionMode.STATUS_CODES:
        return f"{namespace}-noexceptions.h"
    return f"{namespace}.h"


def include_guard(namespace: str, mode: EmissionMode) -> str:
    guard = f"{namespace.upper()}_CPP"
    if mode is EmissionMode.STATUS_CODES:
        guard += "_NOEXCEPTIONS"
    return guard


def format_file_header(config: WriteConfig) -> list[str]:
    """Return comment-block lines for a generated header.

    Output format:
        // x-------------------------------------------x //
        // | C++ bindings for isl
        // | Generated by cppgen
        // | Source: isl-api.xml
        // | Mode: exceptions
        // x-------------------------------------------x //

    Args:
        config: Shared generation metadata.

    Returns:
        List of source lines without trailing newlines. No trailing blank
        line; callers are responsible for surrounding whitespace.

    Raises:
        ValueError: If config.source_label is empty.
    """
    if not config.source_label:
        raise ValueError("source_label must not be empty")

    return [
        _HEADER_BORDER,
        f"// | C++ bindings for {config.namespace}",
        "// | Generated by cppgen",
        f"// | Source: {config.source_label}",
        f"// | Mode: {config.mode.value}",
        _HEADER_BORDER,
    ]


def assemble_bindings_source(
    config: WriteConfig, body_lines: list[str], prologue: str | None = None
) -> str:
    """Return the complete text of one generated header.

    Layout: file header, include guard, standard includes, optional
    prologue text, generated body, closing guard. The result ends with
    exactly one trailing newline.

    Raises:
        ValueError: If body_lines is empty or the header cannot be built.
    """
    if not body_lines:
        raise ValueError("body_lines must not be empty")

    guard = include_guard(config.namespace, config.mode)
    lines = format_file_header(config)
    lines.append("")
    lines.append(f"#ifndef {guard}")
    lines.append(f"#define {guard}")
    lines.append("")
    lines.extend(f"#include {header}" for header in INCLUDES)
    lines.append("")
    if prologue:
        lines.extend(prologue.rstrip("\n").split("\n"))
        lines.append("")
    lines.extend(body_lines)
    lines.append("")
    lines.append(f"#endif /* {guard} */")
    return "\n".join(lines) + "\n"


def write_bindings(
    output_dir: Path,
    config: WriteConfig,
    body_lines: list[str],
    prologue: str | None = None,
) -> FileWriteResult:
    """Write one generated header to disk.

    Thin I/O shell over assemble_bindings_source. Creates output_dir (and
    any missing parent directories) before writing.

    Returns:
        FileWriteResult with filename, resolved path, line_count and
        byte_count of the written content.

    Raises:
        ValueError: Propagated from assemble_bindings_source.
        OSError: Propagated directly if the filesystem write fails.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    content = assemble_bindings_source(config, body_lines, prologue)
    filename = output_filename(config.namespace, config.mode)
    file_path = output_dir / filename
    file_path.write_text(content, encoding="utf-8")
    resolved = file_path.resolve()
    return FileWriteResult(
        filename=filename,
        path=resolved,
        line_count=content.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationCounts:
    """Entity counts derived from the API description.

    Attributes:
        classes: All classes, type-tag subclasses included.
        subclasses: Type-tag subclasses.
        enums: Enumerations.
        constructors: Declared constructors.
        implicit_constructors: Constructors emitted as implicit conversions.
        member_methods: Method overloads taking the receiver.
        static_methods: Method overloads emitted as static.
        callbacks: Callback parameters across constructors and methods.
    """

    classes: int
    subclasses: int
    enums: int
    constructors: int
    implicit_constructors: int
    member_methods: int
    static_methods: int
    callbacks: int


@dataclass(frozen=True)
class GenerationSummary:
    """Complete, immutable data for the post-generation console report.

    Attributes:
        namespace: Target C++ namespace.
        source_label: Description file name.
        modes: Emission modes generated in this run, in write order.
        output_dir: Output directory path as string.
        counts: Entity counts from build_generation_counts.
        files: Ordered write results.
    """

    namespace: str
    source_label: str
    modes: tuple[EmissionMode, ...]
    output_dir: str
    counts: GenerationCounts
    files: tuple[FileWriteResult, ...]


def build_generation_counts(api: ApiDescription) -> GenerationCounts:
    constructors = implicit = member = static = callbacks = 0
    for clazz in api.classes.values():
        for ctor in clazz.constructors:
            constructors += 1
            if is_implicit_conversion(api, clazz, ctor):
                implicit += 1
        for overloads in clazz.methods.values():
            for function in overloads:
                if classify_function(clazz, function) is FunctionKind.MEMBER_METHOD:
                    member += 1
                else:
                    static += 1
        callbacks += sum(len(callback_params(f)) for f in _all_functions(clazz))

    return GenerationCounts(
        classes=len(api.classes),
        subclasses=sum(1 for c in api.classes.values() if c.is_type_subclass),
        enums=len(api.enums),
        constructors=constructors,
        implicit_constructors=implicit,
        member_methods=member,
        static_methods=static,
        callbacks=callbacks,
    )


def build_generation_summary(
    api: ApiDescription,
    namespace: str,
    source_label: str,
    modes: tuple[EmissionMode, ...],
    write_result: PackageWriteResult,
) -> GenerationSummary:
    return GenerationSummary(
        namespace=namespace,
        source_label=source_label,
        modes=modes,
        output_dir=str(write_result.output_dir),
        counts=build_generation_counts(api),
        files=write_result.files,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary to the multi-section console string.

    Split annotations appear only when the split part is non-zero. Line
    counts use thousands separators. Returns a string with exactly one
    trailing newline.
    """
    counts = summary.counts
    lines: list[str] = []
    lines.append(f"C++ bindings for {summary.namespace} generated:")
    lines.append("")
    lines.append(f"  Source:     {summary.source_label}")
    lines.append(f"  Modes:      {', '.join(m.value for m in summary.modes)}")
    lines.append(f"  Output:     {summary.output_dir}")
    lines.append("")
    lines.append("  Entities generated:")

    def _row(label: str, total: int, note: str = "") -> str:
        row = f"    {label:<14}{total:>6}"
        return f"{row}  ({note})" if note else row

    lines.append(
        _row(
            "Classes:",
            counts.classes,
            f"{counts.subclasses} type-tag subclasses" if counts.subclasses else "",
        )
    )
    lines.append(_row("Enums:", counts.enums))
    lines.append(
        _row(
            "Constructors:",
            counts.constructors,
            f"{counts.implicit_constructors} implicit"
            if counts.implicit_constructors
            else "",
        )
    )
    lines.append(
        _row(
            "Methods:",
            counts.member_methods + counts.static_methods,
            f"{counts.member_methods} member + {counts.static_methods} static"
            if counts.static_methods
            else "",
        )
    )
    lines.append(_row("Callbacks:", counts.callbacks))

    lines.append("")
    lines.append("  Files written:")
    for file_result in summary.files:
        line_str = f"{file_result.line_count:>6,} lines"
        lines.append(f"    {file_result.filename:<28} {line_str}")

    total_lines = sum(f.line_count for f in summary.files)
    lines.append("")
    lines.append(f"  Total: {total_lines:,} lines across {len(summary.files)} files")
    lines.append("")

    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Pipeline ---=== #


def build_emit_options(
    api: ApiDescription, config: GenerateConfig, mode: EmissionMode
) -> EmitOptions:
    return EmitOptions(
        mode=mode,
        prefix=api.prefix,
        namespace=config.namespace or api.namespace,
    )


def run_generate(config: GenerateConfig) -> PackageWriteResult:
    """Execute the complete generation pipeline for a GenerateConfig.

    Stages: parse -> load description -> validate -> emit one body per
    requested mode -> write -> summary.

    Raises:
        OSError: Description or prologue not readable, or write failure.
        ET.ParseError: Malformed description XML.
        ModelError: Description the generator cannot wrap.
        RuntimeError: Cycle among type-tag parents.
    """
    print(f"Parsing: {config.api_xml}")
    root = ET.parse(config.api_xml).getroot()
    api = load_api_description(root)
    print(f"  Description: {len(api.classes)} classes, {len(api.enums)} enums")

    validate_api(api)
    prologue = (
        config.prologue.read_text(encoding="utf-8")
        if config.prologue is not None
        else None
    )

    files = []
    namespace = ""
    for mode in config.modes:
        options = build_emit_options(api, config, mode)
        namespace = options.cpp_namespace
        body = generate_bindings(api, options)
        print(f"  Emitted: {len(body)} lines ({mode.value})")
        write_config = WriteConfig(
            source_label=config.api_xml.name,
            mode=mode,
            namespace=namespace,
        )
        files.append(write_bindings(config.output_dir, write_config, body, prologue))

    result = PackageWriteResult(output_dir=Path(config.output_dir), files=tuple(files))
    print(
        f"  Written: {len(result.files)} files, "
        f"{result.total_lines} lines to {result.output_dir}"
    )

    summary = build_generation_summary(
        api, namespace, config.api_xml.name, config.modes, result
    )
    print_generation_summary(summary)
    return result


# ===--- Main generation ---=== #


def main():
    try:
        config = build_config()
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
        else:
            run_generate(config)
    except ModelError as err:
        print(f"Model error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err
    except (OSError, ET.ParseError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except (RuntimeError, ValueError) as err:
        print(f"Internal error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
