"""GraphQL documents sent to the GitHub API."""

SEARCH_PAGE_SIZE = 50

_PULL_REQUEST_FIELDS = """
        id
        number
        title
        url
        additions
        deletions
        createdAt
        updatedAt
        reviewDecision
        author {
          login
          avatarUrl
        }
        repository {
          nameWithOwner
        }
        commits(last: 1) {
          nodes {
            commit {
              statusCheckRollup {
                state
              }
            }
          }
        }
        reviewThreads(first: 100) {
          totalCount
          nodes {
            isResolved
          }
        }"""

SEARCH_PULL_REQUESTS = (
    """
query PullRequests($query: String!, $first: Int!) {
  search(type: ISSUE, query: $query, first: $first) {
    nodes {
      ... on PullRequest {"""
    + _PULL_REQUEST_FIELDS
    + """
      }
    }
  }
}
"""
)

# Same selection as SEARCH_PULL_REQUESTS so the dry-run prices the real query.
PULL_REQUEST_QUERY_COST = (
    """
query PullRequestQueryCost($query: String!, $first: Int!) {
  rateLimit(dryRun: true) {
    cost
    remaining
    limit
  }
  search(type: ISSUE, query: $query, first: $first) {
    nodes {
      ... on PullRequest {"""
    + _PULL_REQUEST_FIELDS
    + """
      }
    }
  }
}
"""
)

PULL_REQUEST_CHECKS = """
query PullRequestChecks($id: ID!) {
  node(id: $id) {
    ... on PullRequest {
      commits(last: 1) {
        nodes {
          commit {
            statusCheckRollup {
              contexts(first: 100) {
                nodes {
                  __typename
                  ... on CheckRun {
                    name
                    status
                    conclusion
                    detailsUrl
                    checkSuite {
                      workflowRun {
                        workflow {
                          name
                        }
                      }
                    }
                  }
                  ... on StatusContext {
                    context
                    state
                    targetUrl
                  }
                }
              }
            }
          }
        }
      }
    }
  }
}
"""

PULL_REQUEST_COMMENT_THREADS = """
query PullRequestComments($id: ID!) {
  node(id: $id) {
    ... on PullRequest {
      reviewThreads(first: 100) {
        nodes {
          id
          isResolved
          isOutdated
          path
          line
          comments(first: 1) {
            nodes {
              bodyText
              url
              author {
                login
              }
            }
          }
        }
      }
    }
  }
}
"""

_REVIEW_REQUEST_SELECTION = """
        pageInfo {
          hasNextPage
          endCursor
        }
        nodes {
          requestedReviewer {
            __typename
            ... on User {
              login
              avatarUrl
            }
            ... on Team {
              name
              avatarUrl
            }
          }
        }"""

PULL_REQUEST_REVIEW_DETAILS = (
    """
query PullRequestReviewDetails($id: ID!) {
  node(id: $id) {
    ... on PullRequest {
      latestReviews(first: 100) {
        nodes {
          state
          submittedAt
          author {
            login
            avatarUrl
          }
        }
      }
      reviewRequests(first: 100) {"""
    + _REVIEW_REQUEST_SELECTION
    + """
      }
    }
  }
}
"""
)

PULL_REQUEST_REVIEW_REQUESTS_PAGE = (
    """
query PullRequestReviewRequestsPage($id: ID!, $after: String) {
  node(id: $id) {
    ... on PullRequest {
      reviewRequests(first: 100, after: $after) {"""
    + _REVIEW_REQUEST_SELECTION
    + """
      }
    }
  }
}
"""
)
