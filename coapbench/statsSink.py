import os

import pandas as pd

from coapbench.phaseResult import HEADER

LOG_FILE = "coapbench"


class StatsSink:
    """Writes one summary line per phase to <name>.txt and one row per phase to <name>.csv."""

    def __init__(self, name=LOG_FILE, directory=".", verbose=False):
        self.directory = directory
        self.verbose = verbose
        self.name = name
        self.started = False
        os.makedirs(directory, exist_ok=True)

    @property
    def text_path(self):
        return os.path.join(self.directory, f"{self.name}.txt")

    @property
    def csv_path(self):
        return os.path.join(self.directory, f"{self.name}.csv")

    def lognew(self, name):
        self.name = f"{LOG_FILE}_{name}"
        self.started = False

    def ensure_log(self):
        if not self.started:
            self.started = True
            self.log(HEADER)

    def log(self, entry):
        if entry != HEADER:
            self.ensure_log()
        with open(self.text_path, "a") as f:
            f.write(entry + "\n")
        if self.verbose:
            print(entry)

    def emit(self, result):
        self.log(result.format_line())
        df = pd.DataFrame([result.to_row()])
        write_header = not os.path.exists(self.csv_path)
        df.to_csv(self.csv_path, mode="a", header=write_header, index=False)


class MemorySink:
    """Keeps results and lines in memory."""

    def __init__(self):
        self.results = []
        self.lines = []

    def log(self, entry):
        self.lines.append(entry)

    def emit(self, result):
        self.results.append(result)
        self.log(result.format_line())
