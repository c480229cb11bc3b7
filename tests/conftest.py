import requests


class FakeResponse:
    def __init__(self, status_code=200, payload=None, raw=None):
        self.status_code = status_code
        self._payload = payload
        self._raw = raw

    def json(self):
        if self._raw is not None:
            raise ValueError(f"invalid JSON: {self._raw!r}")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class FakeCommitsSession:
    """Serves GitHub commit listings keyed by 'owner/repo'."""

    def __init__(self, counts=None, statuses=None, errors=()):
        self.counts = counts or {}
        self.statuses = statuses or {}
        self.errors = set(errors)
        self.calls = []

    def get(self, url, headers=None, params=None, timeout=None):
        repo = url.split("/repos/", 1)[1].rsplit("/commits", 1)[0]
        self.calls.append((repo, headers, params, timeout))
        if repo in self.errors:
            raise requests.ConnectionError(f"connection refused for {repo}")
        status = self.statuses.get(repo, 200)
        if status != 200:
            return FakeResponse(status, {"message": "Not Found"})
        return FakeResponse(200, [{"sha": f"{repo}-{i}"} for i in range(self.counts.get(repo, 0))])
