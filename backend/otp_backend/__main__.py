"""python -m otp_backend 启动开发服务器"""

import uvicorn


def main() -> None:
    uvicorn.run(
        "otp_backend.main:get_application",
        factory=True,
        host="0.0.0.0",
        port=8080,
    )


if __name__ == "__main__":
    main()
