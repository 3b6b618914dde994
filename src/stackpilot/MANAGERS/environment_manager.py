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
Managers for handling environment variables and .env file resolution.
"""
import os
from typing import Dict, List, Mapping, Optional
from ..PARSERS.env_parser import EnvParser


class EnvironmentManager:
    """
    Builds the environment an instance is launched with.
    """
    def __init__(self, base_dir: str = "."):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        """
        self.base_dir = base_dir
        self._file_cache: Dict[str, Dict[str, str]] = {}

    def get_merged_environment(self,
                               explicit_env: Mapping[str, str],
                               env_files: List[str],
                               defaults: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """
        Merges, from lowest to highest precedence: ``defaults`` (such as
        service discovery variables), the service's env files in order,
        and its inline environment.

        :param explicit_env: A dictionary of explicitly defined environment variables.
        :param env_files: A list of paths to .env files.
        :param defaults: Variables any of the above may override.
        :return: A dictionary containing the merged environment variables.
        """
        merged_env: Dict[str, str] = dict(defaults or {})

        for env_file in env_files:
            merged_env.update(self._read(env_file))

        merged_env.update(explicit_env)
        return merged_env

    def _read(self, env_file: str) -> Dict[str, str]:
        file_path = os.path.join(self.base_dir, env_file)
        if file_path not in self._file_cache:
            self._file_cache[file_path] = EnvParser.parse(file_path)
        return self._file_cache[file_path]
