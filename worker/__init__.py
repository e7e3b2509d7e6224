"""Worker 모듈 - 잡 정의, 실행 엔진, Capsule(워커풀)"""
