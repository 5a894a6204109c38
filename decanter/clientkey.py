from starlette.requests import Request


def client_key(request: Request, trust_forwarded: bool = True) -> str:
    """
    Identify the caller for rate limiting.
    Behind a proxy the first X-Forwarded-For hop (or X-Real-IP) is the client;
    otherwise the socket peer address is used.
    """
    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
        real_ip = request.headers.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
