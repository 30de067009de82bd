#!/usr/bin/env python3
"""Standalone web server for local development"""
if __name__ == "__main__":
    import uvicorn
    from adwatch.config import Server
    uvicorn.run("adwatch.server:instance", host=Server.BIND_ADDRESS, port=Server.PORT, reload=False)
