from collections import deque

# (needle in lowercased output, hint) -- first match wins
FAILURE_SIGNATURES = [
    ("repository not found", "repository not found or private, check the URL"),
    ("could not read username", "repository is private or requires authentication"),
    ("could not resolve host", "network error while contacting the remote host"),
    ("missing script", "the project has no matching npm script"),
    ("npm err!", "dependency installation failed, check package.json"),
    ("npm error", "dependency installation failed, check package.json"),
    ("error ts", "TypeScript compilation failed"),
    ("javascript heap out of memory", "the web build ran out of memory"),
    ("out of memory", "the build ran out of memory"),
    ("sdk location not found", "Android SDK not found, set ANDROID_HOME"),
    ("java_home is not set", "JDK not found, set JAVA_HOME"),
    ("duplicate class", "duplicate classes in dependencies (version conflict)"),
    ("execution failed for task", "a Gradle task failed"),
]


class OutputTail:
    """Keeps the last ``size`` output lines of the running command."""

    def __init__(self, size: int = 200):
        self.lines: deque[str] = deque(maxlen=size)

    def __call__(self, line: str) -> None:
        self.lines.append(line)

    def clear(self) -> None:
        self.lines.clear()

    def hint(self) -> str | None:
        return explain(self.lines)


def explain(lines) -> str | None:
    text = "\n".join(lines).lower()
    for needle, hint in FAILURE_SIGNATURES:
        if needle in text:
            return hint
    return None
