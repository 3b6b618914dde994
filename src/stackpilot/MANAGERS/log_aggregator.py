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
Log aggregation and tailing for service instances.
"""
import os
import re
import time
from typing import Callable, Dict, IO, Iterator, List, Optional, Tuple


class LogAggregator:
    """
    Aggregates and tails the per-instance log files written by the process runtime.

    Log files are named ``<service>-<replica>-<n>.log``; every replica and
    every restart of a service gets its own file.
    """
    def __init__(self, log_dir: str):
        """
        Initializes the log aggregator.

        :param log_dir: The directory where log files are stored.
        """
        self.log_dir = log_dir

    def log_files(self, service: str) -> List[str]:
        """Log files of a service, oldest first."""
        if not os.path.isdir(self.log_dir):
            return []
        pattern = re.compile(rf"^{re.escape(service)}-\d+-\d+\.log$")
        paths = [
            os.path.join(self.log_dir, name)
            for name in os.listdir(self.log_dir) if pattern.match(name)
        ]
        return sorted(paths, key=lambda p: (os.path.getmtime(p), p))

    def read(self, service_names: List[str], tail: Optional[int] = None) -> List[Tuple[str, str]]:
        """
        Returns ``(service, line)`` pairs already written, per service in the given order.

        :param tail: Only keep the last ``tail`` lines of each service.
        """
        lines = []
        for name in service_names:
            service_lines = []
            for path in self.log_files(name):
                with open(path, 'r', errors='replace') as f:
                    service_lines.extend(line.rstrip("\n") for line in f)
            if tail is not None:
                service_lines = service_lines[-tail:] if tail > 0 else []
            lines.extend((name, line) for line in service_lines)
        return lines

    def follow(self, service_names: List[str], poll_interval: float = 0.1,
               should_stop: Optional[Callable[[], bool]] = None) -> Iterator[Tuple[str, str]]:
        """
        Yields ``(service, line)`` for lines appended after the call, picking
        up log files of restarted instances as they appear.
        """
        files: Dict[str, Tuple[str, IO]] = {}
        # files that already exist are tailed from their end
        for name in service_names:
            for path in self.log_files(name):
                f = open(path, 'r', errors='replace')
                f.seek(0, os.SEEK_END)
                files[path] = (name, f)
        try:
            while should_stop is None or not should_stop():
                for name in service_names:
                    for path in self.log_files(name):
                        if path not in files:
                            files[path] = (name, open(path, 'r', errors='replace'))
                idle = True
                for name, f in list(files.values()):
                    line = f.readline()
                    if line:
                        idle = False
                        yield name, line.rstrip("\n")
                if idle:
                    time.sleep(poll_interval)
        finally:
            for _, f in files.values():
                f.close()
