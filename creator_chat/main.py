"""Server entry point for the creator chat API.

All application logic lives in creator_chat.api.main.
"""

from creator_chat.api.main import app

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("creator_chat.main:app", host="127.0.0.1", port=8030, reload=True)
