import uvicorn
import os

if __name__ == "__main__":
    # 开发环境自动重载
    is_dev = os.getenv("ENV", "dev") == "dev"

    uvicorn.run(
        "app.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=is_dev,
        log_level="info"
    )
