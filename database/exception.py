"""
Store 관련 예외 클래스 정의
"""


class StoreError(Exception):
    """Store 기본 예외"""
    pass


class ConnectionPoolExhaustedError(StoreError):
    """커넥션풀에서 연결을 얻지 못함"""
    pass


class TransactionError(StoreError):
    """트랜잭션 처리 실패"""
    pass


class ReadOnlyTransactionError(TransactionError):
    """readonly 트랜잭션에서 쓰기 쿼리 실행"""
    pass


class QueryExecutionError(StoreError):
    """쿼리 실행 실패"""
    def __init__(self, query_name: str, message: str):
        self.query_name = query_name
        self.message = f"Query '{query_name}' failed: {message}"
        super().__init__(self.message)


class RecordNotFoundError(StoreError):
    """레코드를 찾을 수 없음"""
    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        self.message = f"{table} record not found: id={record_id}"
        super().__init__(self.message)
