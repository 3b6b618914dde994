# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Any, Mapping

logger = logging.getLogger(__name__)


class InterpolationError(ValueError):
    """A ``${VAR:?message}`` reference found its variable unset."""


class EnvironmentInterpolator:
    """
    Interpolates environment variables the way compose files do.

    Supports ``$VAR``, ``${VAR}``, ``${VAR:-default}``, ``${VAR-default}``,
    ``${VAR:+value}``, ``${VAR+value}``, ``${VAR:?error}``, ``${VAR?error}``
    and ``$$`` as a literal dollar sign. Unset variables without a modifier
    resolve to an empty string.
    """
    # Group 1: escaped $$, 2: braced name, 3: modifier, 4: modifier argument, 5: bare name
    PATTERN = re.compile(
        r"(\$\$)"
        r"|\$\{([A-Za-z_][A-Za-z0-9_]*)(?:(:?[-+?])([^}]*))?\}"
        r"|\$([A-Za-z_][A-Za-z0-9_]*)"
    )

    @classmethod
    def interpolate(cls, template: str, context: Mapping[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises InterpolationError: If a ``?`` modifier finds its variable unset.
        """
        def replace(match):
            if match.group(1):
                return "$"
            name = match.group(2) or match.group(5)
            modifier = match.group(3)
            argument = match.group(4) or ""
            value = context.get(name)
            is_set = value is not None
            is_nonempty = bool(value)

            if modifier == ":-":
                return value if is_nonempty else argument
            if modifier == "-":
                return value if is_set else argument
            if modifier == ":+":
                return argument if is_nonempty else ""
            if modifier == "+":
                return argument if is_set else ""
            if modifier in (":?", "?"):
                ok = is_nonempty if modifier == ":?" else is_set
                if not ok:
                    raise InterpolationError(argument or f"required variable {name} is missing a value")
                return value

            if not is_set:
                logger.warning("The %s variable is not set. Defaulting to a blank string.", name)
                return ""
            return value

        return cls.PATTERN.sub(replace, template)

    @classmethod
    def interpolate_tree(cls, node: Any, context: Mapping[str, str]) -> Any:
        """
        Interpolates every string value in a decoded YAML document.
        Mapping keys are left as written.
        """
        if isinstance(node, str):
            return cls.interpolate(node, context)
        if isinstance(node, dict):
            return {key: cls.interpolate_tree(value, context) for key, value in node.items()}
        if isinstance(node, list):
            return [cls.interpolate_tree(item, context) for item in node]
        return node
