import pulumi
import pulumi_aws as aws
import inspect
import re
from typing import Any, Dict, Optional

from config import DeploymentConfig, Json, ResourceGraph

PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def resolve_ref(ref_text: str, resources: Dict[str, Any]) -> Any:
    if "." in ref_text:
        ref_res, ref_attr = ref_text.split(".", 1)
    else:
        ref_res, ref_attr = ref_text, "id"
    if ref_res not in resources:
        raise ValueError(f"Referenced resource '{ref_res}' not found.")
    resource_obj = resources[ref_res]
    attr_val = getattr(resource_obj, ref_attr, None)
    if attr_val is None:
        raise ValueError(f"Attribute '{ref_attr}' not found on resource '{ref_res}'")
    return attr_val


def interpolate(template: str, resources: Dict[str, Any]) -> pulumi.Output:
    refs = PLACEHOLDER.findall(template)
    values = [resolve_ref(ref, resources) for ref in refs]

    def render(resolved):
        lookup = dict(zip(refs, resolved))
        return PLACEHOLDER.sub(lambda m: str(lookup[m.group(1)]), template)

    return pulumi.Output.all(*values).apply(render)


def resolve_value(value: Any, resources: Dict[str, Any]) -> Any:
    if isinstance(value, Json):
        return pulumi.Output.json_dumps(resolve_value(value.document, resources))
    elif isinstance(value, dict):
        return {k: resolve_value(v, resources) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [resolve_value(item, resources) for item in value]
    elif isinstance(value, str):
        if value.startswith("ref:"):
            return resolve_ref(value[4:], resources)
        elif PLACEHOLDER.search(value):
            return interpolate(value, resources)
        else:
            return value
    else:
        return value


class AWSResourceBuilder:
    def __init__(self, config: DeploymentConfig, opts: Optional[pulumi.ResourceOptions] = None):
        self.config = config
        self.opts = opts
        self.resources: Dict[str, Any] = {}

    def generate_resource_name(self, base_name: str) -> str:
        return f"{self.config.stack_name.strip()}-{base_name}".lower()

    def resolve_args(self, args: dict) -> dict:
        return {key: resolve_value(value, self.resources) for key, value in args.items()}

    def _apply_common_parameters(self, resolved_args: dict, init_sig: inspect.Signature) -> dict:
        if "tags" not in init_sig.parameters:
            resolved_args.pop("tags", None)
            return resolved_args
        stack_tags = {"stack": self.config.stack_name, **self.config.tags}
        own_tags = resolved_args.get("tags")
        if own_tags is None:
            resolved_args["tags"] = stack_tags
        elif isinstance(own_tags, dict):
            resolved_args["tags"] = {**stack_tags, **own_tags}
        return resolved_args

    def _resource_class(self, name: str, resource_type: str):
        module_name, class_name = resource_type.rsplit(".", 1)
        module = getattr(aws, module_name, None)
        if not module:
            raise ValueError(f"AWS module '{module_name}' not found for resource '{name}'.")
        resource_class = getattr(module, class_name, None)
        if resource_class is None:
            raise ValueError(f"Resource class '{class_name}' not found in module '{module_name}' for '{name}'.")
        return module, class_name, resource_class

    def lookup(self, name: str, resource_type: str, resolved_args: dict) -> Any:
        module, class_name, _ = self._resource_class(name, resource_type)
        get_func_name = f"get_{to_snake_case(class_name)}"
        get_func = getattr(module, get_func_name, None)
        if get_func is None:
            raise ValueError(f"Function '{get_func_name}' not found for '{resource_type}'.")
        existing_resource = get_func(**resolved_args)
        pulumi.log.info(f"Fetched existing resource '{name}' via '{get_func_name}' with {resolved_args}")
        return existing_resource

    def build(self, graph: ResourceGraph) -> Dict[str, Any]:
        for resource_cfg in graph.resources:
            name = resource_cfg.name
            if name in self.resources:
                raise ValueError(f"Duplicate resource name '{name}'.")
            resolved_args = self.resolve_args(resource_cfg.args)

            if resource_cfg.existing:
                self.resources[name] = self.lookup(name, resource_cfg.type, resolved_args)
                continue

            _, _, ResourceClass = self._resource_class(name, resource_cfg.type)
            init_sig = inspect.signature(ResourceClass._internal_init)
            resolved_args = self._apply_common_parameters(resolved_args, init_sig)
            pulumi_name = self.generate_resource_name(name)
            resource_instance = ResourceClass(pulumi_name, opts=self.opts, **resolved_args)
            self.resources[name] = resource_instance
            pulumi.log.info(f"Created resource: {pulumi_name} ({resource_cfg.type})")
        return self.resources

    def export(self, graph: ResourceGraph) -> Dict[str, Any]:
        exported = {}
        for output in graph.outputs:
            value = resolve_value(output.ref, self.resources)
            pulumi.export(output.name, value)
            exported[output.name] = value
        return exported
