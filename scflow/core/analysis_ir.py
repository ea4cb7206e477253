"""
Intermediate Representation (IR) for reproducible analysis operations.

Every service operation returns an ``AnalysisStep`` next to its result. The
step records the exact parameters used and carries a Jinja2 code template,
so the provenance of a run can be rendered back into a standalone Python
script that repeats it.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from jinja2 import Environment, StrictUndefined, TemplateSyntaxError

logger = logging.getLogger(__name__)

_TEMPLATE_ENV = Environment(undefined=StrictUndefined, keep_trailing_newline=True)
# Python literal rendering, e.g. {{ method | py }} -> 'wilcoxon'
_TEMPLATE_ENV.filters["py"] = repr


@dataclass
class ParameterSpec:
    """
    Type and validation metadata for one analysis parameter.

    Attributes:
        param_type: Python type as string (e.g., "int", "float", "List[str]")
        default_value: Default value of the parameter
        required: Whether this parameter must be provided
        validation_rule: Optional validation expression (e.g., "dims > 0")
        description: Human-readable parameter description
    """

    param_type: str
    default_value: Any
    required: bool = False
    validation_rule: Optional[str] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to JSON-compatible dictionary.

        Raises:
            TypeError: If default_value is not JSON-serializable
        """
        try:
            json.dumps({"value": self.default_value})
        except TypeError as e:
            raise TypeError(
                f"ParameterSpec default_value is not JSON-serializable: "
                f"{type(self.default_value).__name__} = {self.default_value!r}. "
                f"Parameter: '{self.description or self.param_type}'. "
                f"Error: {e}"
            ) from e

        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParameterSpec":
        return cls(**data)

    def __repr__(self) -> str:
        return (
            f"ParameterSpec(type={self.param_type}, "
            f"default={self.default_value!r}, required={self.required})"
        )


@dataclass
class AnalysisStep:
    """
    Intermediate Representation of one executed pipeline operation.

    Attributes:
        operation: Fully-qualified operation name (e.g., "scanpy.pp.normalize_total")
        tool_name: Service method that produced the step
        description: Human-readable description (becomes a comment in exports)
        library: Main library doing the work (e.g., "scanpy", "scflow")
        code_template: Jinja2 template with {{ variable }} placeholders
        imports: Import statements the rendered code needs
        parameters: Actual parameter values used in this execution
        parameter_schema: Type info for each parameter
        input_entities: Input data references
        output_entities: Output data references
        execution_context: Seeds, timestamps and other run metadata
        exportable: Whether to include the step in script exports

    Example:
        >>> ir = AnalysisStep(
        ...     operation="scanpy.pp.normalize_total",
        ...     tool_name="normalize",
        ...     description="Log-normalize counts per cell",
        ...     library="scanpy",
        ...     code_template="sc.pp.normalize_total(adata, target_sum={{ scale_factor }})",
        ...     imports=["import scanpy as sc"],
        ...     parameters={"scale_factor": 10000},
        ...     parameter_schema={},
        ... )
        >>> ir.render()
        'sc.pp.normalize_total(adata, target_sum=10000)'
    """

    operation: str
    tool_name: str
    description: str

    library: str
    code_template: str
    imports: List[str]

    parameters: Dict[str, Any]
    parameter_schema: Dict[str, ParameterSpec] = field(default_factory=dict)

    input_entities: List[str] = field(default_factory=lambda: ["adata"])
    output_entities: List[str] = field(default_factory=lambda: ["adata"])

    execution_context: Dict[str, Any] = field(
        default_factory=lambda: {"timestamp": datetime.now().isoformat()}
    )

    exportable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        data = asdict(self)
        data["parameter_schema"] = {
            k: v.to_dict() if isinstance(v, ParameterSpec) else v
            for k, v in self.parameter_schema.items()
        }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisStep":
        """
        Deserialize from dictionary.

        Raises:
            ValueError: If required fields are missing
        """
        required_fields = [
            "operation",
            "tool_name",
            "description",
            "library",
            "code_template",
            "imports",
            "parameters",
        ]
        missing_fields = [name for name in required_fields if name not in data]
        if missing_fields:
            raise ValueError(f"Missing required fields: {missing_fields}")

        data = dict(data)
        data["parameter_schema"] = {
            k: ParameterSpec.from_dict(v) if isinstance(v, dict) else v
            for k, v in data.get("parameter_schema", {}).items()
        }
        return cls(**data)

    def validate_template(self) -> bool:
        """
        Check that the code template is valid Jinja2.

        Raises:
            ValueError: If template has invalid syntax
        """
        try:
            _TEMPLATE_ENV.parse(self.code_template)
            return True
        except TemplateSyntaxError as e:
            raise ValueError(f"Invalid Jinja2 template: {e}") from e

    def render(self, **override_params) -> str:
        """
        Render the code template with the recorded parameters.

        Args:
            **override_params: Optional parameter overrides

        Returns:
            Rendered Python code

        Raises:
            ValueError: If template rendering fails
        """
        try:
            params = {**self.parameters, **override_params}
            return _TEMPLATE_ENV.from_string(self.code_template).render(**params)
        except Exception as e:
            logger.error(f"Failed to render template for {self.operation}: {e}")
            raise ValueError(f"Template rendering failed: {e}") from e

    def validate_rendered_code(self, **override_params) -> bool:
        """
        Render and check the generated code compiles.

        Raises:
            SyntaxError: If generated code is invalid
        """
        import ast

        code = self.render(**override_params)
        try:
            ast.parse(code)
            return True
        except SyntaxError as e:
            logger.error(f"Invalid generated code for {self.operation}: {e}")
            raise

    def __repr__(self) -> str:
        return (
            f"AnalysisStep(operation={self.operation}, "
            f"tool={self.tool_name}, "
            f"params={len(self.parameters)})"
        )


def extract_unique_imports(irs: Iterable[AnalysisStep]) -> List[str]:
    """
    Collect and deduplicate imports from several steps.

    Imports are ordered stdlib, then third-party, then scflow.
    """
    imports = set()
    for ir in irs:
        imports.update(ir.imports)

    stdlib_modules = {"os", "sys", "pathlib", "json", "math", "random", "typing"}

    def import_sort_key(import_str: str) -> tuple:
        parts = import_str.split()
        module = parts[1].split(".")[0] if len(parts) > 1 else ""
        if module in stdlib_modules:
            return (0, import_str)
        if module == "scflow":
            return (2, import_str)
        return (1, import_str)

    return sorted(imports, key=import_sort_key)


def render_script(irs: List[AnalysisStep], title: str = "scflow analysis") -> str:
    """
    Render a sequence of steps into one executable Python script.

    Args:
        irs: Steps in execution order; non-exportable steps are skipped
        title: Title written into the script header

    Returns:
        str: Script source
    """
    exportable = [ir for ir in irs if ir.exportable]
    lines = [f'"""{title}', "", f"Generated {datetime.now().isoformat()}.", '"""', ""]
    lines.extend(extract_unique_imports(exportable))

    for index, ir in enumerate(exportable, start=1):
        lines.extend(["", "", f"# Step {index}: {ir.description}"])
        lines.append(ir.render().rstrip())

    return "\n".join(lines) + "\n"
