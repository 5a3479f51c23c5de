#!/usr/bin/env python
"""
## Jinja and Butane Templating, Boot Config Rendering

### Python
- render_instance_config
- instance_parameters
- jinja_run
- jinja_run_file
- butane_transpile

#### minor
- RenderedConfig
- RenderError
- ToolsExtension(jinja2.ext.Extension)
- join_paths
- is_text
- load_text
- load_contents
- merge_butane_dicts
- merge_dict_struct
- inline_local_files
- expand_templates

"""

import base64
import copy
import glob
import ipaddress
import os
import re
import stat
import subprocess

import chardet
import jinja2
import jinja2.ext
import yaml

from typing import Optional, Union, List


class RenderError(Exception):
    """Rendering of a boot configuration failed.

    Raised for unresolved template parameters, unreadable templates, invalid
    YAML and transpiler validation failures.
    """

    def __init__(self, message, template=None):
        super().__init__(message)
        self.template = template


def join_paths(basedir, *filepaths):
    """Joins file paths to a base directory, ensuring the result is within the base.

    Args:
        basedir (str):
            The absolute base directory.
        *filepaths (str):
            The file paths to join to the base directory.

    Returns:
        str:
            The joined path.

    Raises:
        ValueError:
            If the resolved path is outside the base directory.
    """
    if not basedir:
        basedir = "/"
    # remove optional leading "/" of filepaths entries, because path.join cuts out parts before "/"
    filepaths = [path[1:] if path.startswith("/") else path for path in filepaths]
    targetpath = os.path.join(basedir, *filepaths)
    abspath = os.path.abspath(targetpath)
    if not abspath.startswith(os.path.abspath(basedir)):
        raise ValueError("Targetpath: {} outside Basedir: {}".format(abspath, basedir))
    return targetpath


def is_text(filepath):
    "True if chardet is reasonably sure the start of filepath is text"
    with open(filepath, "rb") as file:
        data = file.read(8192)
    if not data:
        return True
    result = chardet.detect(data)
    return result["encoding"] is not None and result["confidence"] > 0.5


def load_text(basedir, *filepaths):
    with open(join_paths(basedir, *filepaths), "r") as f:
        return f.read()


def load_contents(filepath):
    """Loads the contents of a file, either inline or as a data URL.

    Text files are returned as `{"inline": str}`, binary files as
    `{"source": "data:;base64,..."}`.
    """
    if is_text(filepath):
        with open(filepath, "r") as f:
            return {"inline": f.read()}
    with open(filepath, "rb") as f:
        return {"source": "data:;base64," + base64.b64encode(f.read()).decode("utf-8")}


def merge_dict_struct(struct1, struct2):
    """Recursively merges two data structures.

    Values of the second structure take precedence. Dictionaries are merged
    key by key, lists get the items of the second list appended if not already
    present, any other second value replaces the first.

    Args:
        struct1 (any):
            The base data structure.
        struct2 (any):
            The data structure to merge into the base.

    Returns:
        any:
            The merged data structure.
    """

    def is_dict_like(v):
        return hasattr(v, "keys") and hasattr(v, "values") and hasattr(v, "items")

    def is_list_like(v):
        return hasattr(v, "append") and hasattr(v, "extend") and hasattr(v, "pop")

    merged = copy.deepcopy(struct1)
    if is_dict_like(struct1) and is_dict_like(struct2):
        for key in struct2:
            if key in struct1:
                merged[key] = merge_dict_struct(struct1[key], struct2[key])
            else:
                merged[key] = copy.deepcopy(struct2[key])
    elif is_list_like(struct1) and is_list_like(struct2):
        for item in struct2:
            if item not in struct1:
                merged.append(copy.deepcopy(item))
    elif is_dict_like(struct1) and struct2 is None:
        pass
    elif is_list_like(struct1) and struct2 is None:
        pass
    else:
        merged = copy.deepcopy(struct2)
    return merged


class ToolsExtension(jinja2.ext.Extension):
    """Jinja2 filters available to boot config templates.

    Only pure filters are registered, a template must render to the same
    bytes every time it is rendered with the same parameters.
    """

    def __init__(self, environment):
        super(ToolsExtension, self).__init__(environment)
        self.environment = environment
        self.environment.filters["regex_escape"] = self.regex_escape
        self.environment.filters["regex_search"] = self.regex_search
        self.environment.filters["regex_match"] = self.regex_match
        self.environment.filters["regex_replace"] = self.regex_replace
        self.environment.filters["toyaml"] = self.toyaml
        self.environment.filters["cidr2ip"] = self.cidr2ip

    @staticmethod
    def _flags(ignorecase, multiline):
        flags = 0
        if ignorecase:
            flags |= re.I
        if multiline:
            flags |= re.M
        return flags

    def regex_escape(self, value: str) -> str:
        return re.escape(value)

    def regex_search(
        self, value: str, pattern: str, ignorecase=False, multiline=False
    ) -> tuple | None:
        """Searches a string for a match to a regular expression.

        Returns:
            tuple | None:
                A tuple of the captured groups, or None if no match is found.
        """
        obj = re.search(pattern, value, self._flags(ignorecase, multiline))
        if not obj:
            return
        return obj.groups()

    def regex_match(
        self, value: str, pattern: str, ignorecase=False, multiline=False
    ) -> tuple | None:
        """Matches a regular expression at the beginning of a string.

        Returns:
            tuple | None:
                A tuple of the captured groups, or None if no match is found.
        """
        obj = re.match(pattern, value, self._flags(ignorecase, multiline))
        if not obj:
            return
        return obj.groups()

    def regex_replace(
        self, value: str, pattern: str, replacement: str, ignorecase=False, multiline=False
    ) -> str:
        compiled_pattern = re.compile(pattern, self._flags(ignorecase, multiline))
        return compiled_pattern.sub(replacement, value)

    def toyaml(self, value: object, inline=False) -> str:
        return yaml.safe_dump(value, default_flow_style=inline)

    def cidr2ip(self, value: str, index: int = 0) -> Optional[str]:
        """Converts a CIDR notation to an IP address.

        Args:
            value (str):
                The CIDR notation (e.g., "192.168.1.0/24").
            index (int, optional):
                The 0-based index of the usable IP address to return. Defaults to 0.

        Returns:
            str:
                The IP address at the specified index as a string.

        Raises:
            ValueError:
                If the CIDR is invalid, if index < 0, or if the index is out of range.
        """
        if index < 0:
            raise ValueError("index must be non-negative")
        try:
            network = ipaddress.ip_network(value, strict=False)
        except ValueError as e:
            raise ValueError(f"Invalid CIDR: {value} - {e}") from e

        hosts = list(network.hosts())
        if not hosts:  # /32, /31, /128, /127
            if index == 0:
                return str(network.network_address)
            raise ValueError(f"Index out of range: {index} of 1")

        if index < len(hosts):
            return str(hosts[index])
        raise ValueError(f"Index out of range: {index} of {len(hosts)}")


def _jinja_env(searchpath):
    return jinja2.Environment(
        loader=jinja2.FileSystemLoader(searchpath),
        extensions=[ToolsExtension],
        undefined=jinja2.StrictUndefined,
    )


def jinja_run(
    template_str: str, searchpath: Union[str, List[str]], environment: dict = {}
) -> str:
    """Renders a Jinja2 template string in strict mode.

    Any reference to an undefined variable raises `jinja2.UndefinedError`
    instead of rendering as an empty string.

    Args:
        template_str (str):
            The Jinja2 template string.
        searchpath (Union[str, List[str]]):
            A path or list of paths to search for included templates.
        environment (dict, optional):
            A dictionary of variables to make available in the template. Defaults to {}.

    Returns:
        str:
            The rendered template.
    """
    try:
        template = _jinja_env(searchpath).from_string(template_str)
        return template.render(environment)
    except jinja2.exceptions.TemplateSyntaxError as e:
        error_line = e.lineno
        lines = template_str.splitlines()
        start = max(0, error_line - 6)  # 5 lines before + error line
        end = min(len(lines), error_line + 5)
        context = "\n".join(f"{i + 1}: {line}" for i, line in enumerate(lines[start:end], start))
        e.context = context
        e.render_message = (
            f"Jinja2 Template Syntax Error: {e}\n"
            f"Error occurred on line {error_line}.\n"
            f"Context:\n{context}"
        )
        raise e


def jinja_run_file(template_filename, searchpath, environment={}):
    """Renders a Jinja2 template file in strict mode.

    - searchpath can be a list of strings, template_filename can be from any searchpath
    """
    template = _jinja_env(searchpath).get_template(template_filename)
    return template.render(environment)


def merge_butane_dicts(struct1, struct2):
    """Merges two Butane dictionaries with special handling for certain keys.

    `storage` files, links and directories are de-duplicated by path and
    `systemd` units by name, with entries of the second structure taking
    precedence. Dropins of units that appear in both are merged by name.

    Args:
        struct1 (dict):
            The base Butane dictionary.
        struct2 (dict):
            The Butane dictionary to merge into the base.

    Returns:
        dict:
            The merged Butane dictionary.
    """
    merged = merge_dict_struct(struct1, struct2)

    for section in ["files", "links", "directories"]:
        uniqitems = []
        seen = set()
        allitems = (merged.get("storage") or {}).get(section, [])

        if allitems:
            # walk in reverse order, last definition of a path wins
            for item in allitems[::-1]:
                if item["path"] not in seen:
                    seen.add(item["path"])
                    uniqitems.append(item)
            merged["storage"][section] = uniqitems[::-1]

    uniqunits = {}
    seendropins = set()
    allunits = (merged.get("systemd") or {}).get("units", [])

    if allunits:
        # last definition of a unit wins, record its dropins
        for unit in allunits[::-1]:
            if unit["name"] not in uniqunits:
                uniqunits[unit["name"]] = unit
                for dropin in unit.get("dropins", []):
                    seendropins.add(unit["name"] + "_" + dropin["name"])

        # add dropins only defined in earlier definitions of the same unit
        for unit in allunits[::-1]:
            for dropin in unit.get("dropins", []):
                unit_dropin = unit["name"] + "_" + dropin["name"]
                if unit_dropin not in seendropins:
                    seendropins.add(unit_dropin)
                    uniqunits[unit["name"]].setdefault("dropins", []).append(dropin)

        merged["systemd"]["units"] = [v for k, v in uniqunits.items()][::-1]

    return merged


def inline_local_files(yaml_dict, basedir):
    """Inlines local file references in a Butane dictionary.

    - storage:trees:[]:local -> files:[]:contents:inline/source
    - storage:files:[]:contents:local -> []:contents:inline/source
    - systemd:units:[]:contents_local -> []:contents
    - systemd:units:[]:dropins:[]:contents_local -> []:contents

    Text files are inlined, binary files become base64 data urls.

    Args:
        yaml_dict (dict):
            The Butane dictionary.
        basedir (str):
            The base directory for resolving local file paths.

    Returns:
        dict:
            The Butane dictionary with local files inlined.
    """
    ydict = copy.deepcopy(yaml_dict)

    if "storage" in ydict and "trees" in ydict["storage"]:
        if "files" not in ydict["storage"]:
            ydict["storage"].update({"files": []})

        for t in ydict["storage"]["trees"]:
            localdir = join_paths(basedir, t["local"])
            for lf in sorted(glob.glob(os.path.join(localdir, "**"), recursive=True)):
                if os.path.isfile(lf):
                    rf = join_paths(t.get("path", "/"), os.path.relpath(lf, localdir))
                    is_exec = os.stat(lf).st_mode & stat.S_IXUSR
                    ydict["storage"]["files"].append(
                        {
                            "path": rf,
                            "mode": 0o755 if is_exec else 0o664,
                            "contents": load_contents(lf),
                        }
                    )
        del ydict["storage"]["trees"]

    if "storage" in ydict and "files" in ydict["storage"]:
        for f in ydict["storage"]["files"]:
            if "contents" in f and "local" in f["contents"]:
                fname = f["contents"].pop("local")
                f["contents"].update(load_contents(join_paths(basedir, fname)))

    if "systemd" in ydict and "units" in ydict["systemd"]:
        for u in ydict["systemd"]["units"]:
            if "contents_local" in u:
                u["contents"] = load_text(basedir, u.pop("contents_local"))
            for d in u.get("dropins", []):
                if "contents_local" in d:
                    d["contents"] = load_text(basedir, d.pop("contents_local"))
    return ydict


def expand_templates(yaml_dict, basedir, environment):
    """Renders jinja templated contents within a Butane dictionary.

    - storage:files[].contents.template: jinja
    - systemd:units[].template: jinja
    - systemd:units[].dropins[].template: jinja

    Raises:
        ValueError:
            If an unsupported template type is specified.
    """
    ydict = copy.deepcopy(yaml_dict)

    if "storage" in ydict and "files" in ydict["storage"]:
        for f in ydict["storage"]["files"]:
            if "contents" in f and "template" in f["contents"]:
                if f["contents"]["template"] != "jinja":
                    raise ValueError("Invalid option, template must be one of: jinja")
                if "inline" not in f["contents"]:
                    raise ValueError("Invalid option, contents must be != None if template != None")
                f["contents"]["inline"] = jinja_run(f["contents"]["inline"], basedir, environment)
                del f["contents"]["template"]

    if "systemd" in ydict and "units" in ydict["systemd"]:
        for u in ydict["systemd"]["units"]:
            entries = [u, *u.get("dropins", [])]
            for entry in entries:
                if "template" not in entry:
                    continue
                if entry["template"] != "jinja":
                    raise ValueError("Invalid option, template must be one of: jinja")
                if "contents" in entry:
                    entry["contents"] = jinja_run(entry["contents"], basedir, environment)
                del entry["template"]
    return ydict


def butane_transpile(butane_yaml, basedir, timeout_seconds=30):
    """Translates butane yaml to ignition json using the `butane` binary.

    Args:
        butane_yaml (str):
            The merged butane configuration.
        basedir (str):
            Directory butane resolves local file references against.
        timeout_seconds (int, optional):
            Maximum runtime of the transpiler. Defaults to 30.

    Returns:
        str:
            The ignition json.

    Raises:
        RenderError:
            If butane is missing, times out or rejects the configuration.
    """
    try:
        process = subprocess.Popen(
            ["butane", "--strict", "--pretty", "--raw", "--files-dir", basedir],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        output, error = process.communicate(input=butane_yaml, timeout=timeout_seconds)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise RenderError("butane failed: {}".format(e)) from e
    if process.returncode != 0:
        raise RenderError("butane failed:\n{}".format(error))
    return output


class RenderedConfig:
    """The boot configuration of one instance.

    Attributes:
        parameters (dict):
            The parameter map the templates were rendered with.
        butane (str):
            The merged butane yaml, input of the transpiler.
        rendered (str):
            The transpiled configuration, exactly as delivered to the instance.
        overlays (list[str]):
            The rendered overlay sources, in merge order.
    """

    def __init__(self, parameters, butane, rendered, overlays):
        self.parameters = parameters
        self.butane = butane
        self.rendered = rendered
        self.overlays = overlays

    def __repr__(self):
        return "RenderedConfig(parameters={!r}, overlays={})".format(
            self.parameters, len(self.overlays)
        )


def instance_parameters(parameters, vmid, name, count, ordinal):
    """Builds the parameter map of one instance.

    The identity keys always override user supplied parameters of the same name.
    """
    this_env = merge_dict_struct({}, parameters or {})
    this_env.update(
        {
            "INSTANCE_ID": vmid,
            "INSTANCE_NAME": name,
            "INSTANCE_COUNT": count,
            "INSTANCE_ORDINAL": ordinal,
            "HOSTNAME": name,
        }
    )
    return this_env


def _load_butane_source(fname, basedir, environment):
    source = jinja_run_file(fname, basedir, environment)
    source_dict = yaml.safe_load(source) or {}
    if not hasattr(source_dict, "keys"):
        raise RenderError("{} does not render to a yaml mapping".format(fname), fname)
    expanded = expand_templates(inline_local_files(source_dict, basedir), basedir, environment)
    return source, expanded


def render_instance_config(
    template, overlays, parameters, basedir, transpiler=butane_transpile
) -> RenderedConfig:
    """Renders the boot configuration of one instance.

    The primary template and every overlay are rendered with the same
    parameters, parsed and merged in list order, later entries override
    earlier ones. The merged butane yaml is dumped with sorted keys and handed
    to the transpiler, whose output is the rendered configuration.

    Args:
        template (str):
            Path of the primary butane template, relative to basedir.
        overlays (list[str]):
            Paths of overlay templates, relative to basedir.
        parameters (dict):
            The parameter map, see `instance_parameters`.
        basedir (str):
            The template search path and base for local file references.
        transpiler (callable, optional):
            `transpiler(butane_yaml, basedir) -> str`. Defaults to `butane_transpile`.

    Returns:
        RenderedConfig:
            The rendered configuration.

    Raises:
        RenderError:
            On any template, parameter, yaml or transpiler failure.
    """
    merged = {}
    rendered_overlays = []
    current = template
    try:
        for nr, fname in enumerate([template, *overlays]):
            current = fname
            source, source_dict = _load_butane_source(fname, basedir, parameters)
            if nr > 0:
                rendered_overlays.append(source)
            merged = merge_butane_dicts(merged, source_dict)
    except jinja2.exceptions.UndefinedError as e:
        raise RenderError("{}: undefined parameter: {}".format(current, e), current) from e
    except jinja2.exceptions.TemplateNotFound as e:
        raise RenderError("template not found: {}".format(e), current) from e
    except jinja2.exceptions.TemplateSyntaxError as e:
        raise RenderError("{}: {}".format(current, getattr(e, "render_message", e)), current) from e
    except jinja2.exceptions.TemplateError as e:
        raise RenderError("{}: {}".format(current, e), current) from e
    except yaml.YAMLError as e:
        raise RenderError("{}: invalid yaml: {}".format(current, e), current) from e
    except (OSError, ValueError) as e:
        raise RenderError("{}: {}".format(current, e), current) from e
    except (KeyError, TypeError, AttributeError) as e:
        # eg. a unit without name, or a filter applied to the wrong type
        raise RenderError(
            "{}: invalid template or butane structure: {!r}".format(current, e), current
        ) from e

    butane = yaml.safe_dump(merged, sort_keys=True)
    try:
        rendered = transpiler(butane, basedir)
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
        raise RenderError("transpiler failed: {!r}".format(e), template) from e
    return RenderedConfig(parameters, butane, rendered, rendered_overlays)
